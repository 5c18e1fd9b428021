import os

import pytest

from lnmint.core.base import Method, Unit
from lnmint.core.settings import settings


@pytest.mark.asyncio
async def test_startup_builds_ledger_from_settings():
    db_file = os.path.join(settings.mint_database, "mint.sqlite3")
    if os.path.exists(db_file):
        os.remove(db_file)

    from lnmint.mint import startup

    assert set(startup.ledger.backends[Method.bolt11]) == {Unit.sat, Unit.usd}
    await startup.start_mint_init()
    try:
        keyset = startup.ledger.get_active_keyset(Unit.sat)
        assert keyset.id == "009a1f293253e41e"
        assert startup.ledger.get_active_keyset(Unit.usd).active
        assert startup.ledger.regular_tasks
        assert len(startup.ledger.invoice_listener_tasks) == 2
    finally:
        await startup.shutdown_mint()
