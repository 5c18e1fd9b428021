import importlib
import os
import shutil
from pathlib import Path

import pytest
import pytest_asyncio

from lnmint.core.base import Method, Unit
from lnmint.core.db import Database
from lnmint.core.migrations import migrate_databases
from lnmint.core.settings import settings
from lnmint.mint import migrations as migrations_mint
from lnmint.mint.crud import LedgerCrudSqlite
from lnmint.mint.ledger import Ledger

settings.debug = True
settings.log_level = "TRACE"
settings.mint_dir = "./test_data/"
settings.mint_backend_bolt11_sat = settings.mint_backend_bolt11_sat or "FakeWallet"
settings.mint_backend_bolt11_usd = settings.mint_backend_bolt11_usd or "FakeWallet"
settings.fakewallet_brr = True
settings.fakewallet_delay_outgoing_payment = 0
settings.fakewallet_delay_incoming_payment = 0
assert (
    settings.mint_test_database != settings.mint_database
), "Test database is the same as the main database"
settings.mint_database = settings.mint_test_database
settings.mint_private_key = "TEST_PRIVATE_KEY"
settings.mint_max_balance = None
settings.db_connection_pool = True

assert "test" in settings.mint_dir
shutil.rmtree(settings.mint_dir, ignore_errors=True)
Path(settings.mint_dir).mkdir(parents=True, exist_ok=True)

FAKEWALLET_DEFAULTS = {
    "lightning_fee_percent": settings.lightning_fee_percent,
    "lightning_reserve_fee_min": settings.lightning_reserve_fee_min,
    "fakewallet_brr": settings.fakewallet_brr,
    "fakewallet_payment_state": settings.fakewallet_payment_state,
    "fakewallet_payment_state_exception": settings.fakewallet_payment_state_exception,
    "fakewallet_pay_invoice_state": settings.fakewallet_pay_invoice_state,
    "fakewallet_pay_invoice_state_exception": settings.fakewallet_pay_invoice_state_exception,
    "fakewallet_delay_outgoing_payment": settings.fakewallet_delay_outgoing_payment,
    "fakewallet_fee_paid_msat": settings.fakewallet_fee_paid_msat,
    "mint_lightning_payment_timeout": settings.mint_lightning_payment_timeout,
    "mint_peg_out_only": settings.mint_peg_out_only,
    "mint_max_peg_in": settings.mint_max_peg_in,
    "mint_max_peg_out": settings.mint_max_peg_out,
    "mint_max_balance": settings.mint_max_balance,
    "mint_inactive_keyset_retention_days": settings.mint_inactive_keyset_retention_days,
    "mint_disable_melt_on_error": settings.mint_disable_melt_on_error,
}


@pytest.fixture(autouse=True)
def reset_settings():
    yield
    for key, value in FAKEWALLET_DEFAULTS.items():
        setattr(settings, key, value)


# This fixture is used for all tests that need a running ledger
@pytest_asyncio.fixture(scope="function")
async def ledger():
    async def start_mint_init(ledger: Ledger) -> Ledger:
        await migrate_databases(ledger.db, migrations_mint)
        await ledger.startup_ledger()
        return ledger

    if not settings.mint_database.startswith("postgres"):
        # clear sqlite database
        db_file = os.path.join(settings.mint_database, "mint.sqlite3")
        if os.path.exists(db_file):
            os.remove(db_file)
    else:
        # clear postgres database
        db = Database("mint", settings.mint_database)
        async with db.connect() as conn:
            # drop all tables
            await conn.execute("DROP SCHEMA public CASCADE;")
            await conn.execute("CREATE SCHEMA public;")
        await db.engine.dispose()

    wallets_module = importlib.import_module("lnmint.lightning")
    lightning_backend_sat = getattr(wallets_module, settings.mint_backend_bolt11_sat)(
        unit=Unit.sat
    )
    lightning_backend_usd = getattr(wallets_module, settings.mint_backend_bolt11_usd)(
        unit=Unit.usd
    )
    backends = {
        Method.bolt11: {
            Unit.sat: lightning_backend_sat,
            Unit.usd: lightning_backend_usd,
        },
    }
    ledger = Ledger(
        db=Database("mint", settings.mint_database),
        seed=settings.mint_private_key,
        backends=backends,
        crud=LedgerCrudSqlite(),
    )
    ledger = await start_mint_init(ledger)
    yield ledger
    await ledger.shutdown_ledger()
