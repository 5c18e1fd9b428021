from .fake import FakeWallet  # noqa: F401
