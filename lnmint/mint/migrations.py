from ..core.db import Connection, Database


async def m000_create_migrations_table(conn: Connection):
    await conn.execute(
        f"""
    CREATE TABLE IF NOT EXISTS {conn.table_with_schema('dbversions')} (
        db TEXT PRIMARY KEY,
        version INT NOT NULL
    )
    """
    )


async def m001_initial(db: Database):
    async with db.connect() as conn:
        await conn.execute(
            f"""
                CREATE TABLE IF NOT EXISTS {db.table_with_schema('keysets')} (
                    id TEXT NOT NULL,
                    derivation_path TEXT NOT NULL,
                    unit TEXT NOT NULL,
                    active BOOL NOT NULL,
                    amounts TEXT NOT NULL,
                    valid_from {db.big_int},
                    valid_to {db.big_int},

                    UNIQUE (id),
                    UNIQUE (derivation_path)

                );
            """
        )

        # one row per secret the mint has ever seen, keyed by Y = hash_to_curve(secret)
        await conn.execute(
            f"""
                CREATE TABLE IF NOT EXISTS {db.table_with_schema('proofs')} (
                    y TEXT NOT NULL,
                    id TEXT NOT NULL,
                    amount {db.big_int} NOT NULL,
                    secret TEXT NOT NULL,
                    c TEXT NOT NULL,
                    witness TEXT,
                    state TEXT NOT NULL,
                    melt_quote TEXT,
                    created {db.big_int},
                    updated {db.big_int},

                    UNIQUE (y)

                );
            """
        )

        # outputs reserved for change have no signature (c_ IS NULL) until the melt settles
        await conn.execute(
            f"""
                CREATE TABLE IF NOT EXISTS {db.table_with_schema('promises')} (
                    b_ TEXT NOT NULL,
                    id TEXT NOT NULL,
                    amount {db.big_int} NOT NULL,
                    c_ TEXT,
                    dleq_e TEXT,
                    dleq_s TEXT,
                    mint_quote TEXT,
                    melt_quote TEXT,
                    created {db.big_int},
                    signed_at {db.big_int},

                    UNIQUE (b_)

                );
            """
        )

        await conn.execute(
            f"""
                CREATE TABLE IF NOT EXISTS {db.table_with_schema('mint_quotes')} (
                    quote TEXT NOT NULL,
                    method TEXT NOT NULL,
                    request TEXT NOT NULL,
                    checking_id TEXT NOT NULL,
                    unit TEXT NOT NULL,
                    amount {db.big_int} NOT NULL,
                    state TEXT NOT NULL,
                    created_time {db.big_int},
                    paid_time {db.big_int},
                    expiry {db.big_int},

                    UNIQUE (quote),
                    UNIQUE (checking_id)

                );
            """
        )

        await conn.execute(
            f"""
                CREATE TABLE IF NOT EXISTS {db.table_with_schema('melt_quotes')} (
                    quote TEXT NOT NULL,
                    method TEXT NOT NULL,
                    request TEXT NOT NULL,
                    checking_id TEXT NOT NULL,
                    unit TEXT NOT NULL,
                    amount {db.big_int} NOT NULL,
                    fee_reserve {db.big_int},
                    state TEXT NOT NULL,
                    created_time {db.big_int},
                    paid_time {db.big_int},
                    fee_paid {db.big_int},
                    payment_preimage TEXT,
                    expiry {db.big_int},
                    change TEXT,

                    UNIQUE (quote)

                );
            """
        )


async def m002_add_indices(db: Database):
    async with db.connect() as conn:
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS proofs_melt_quote_idx ON"
            f" {db.table_with_schema('proofs')} (melt_quote)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS promises_melt_quote_idx ON"
            f" {db.table_with_schema('promises')} (melt_quote)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS mint_quotes_request_idx ON"
            f" {db.table_with_schema('mint_quotes')} (request)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS melt_quotes_checking_id_idx ON"
            f" {db.table_with_schema('melt_quotes')} (checking_id)"
        )


async def m003_add_balance_views(db: Database):
    async with db.connect() as conn:
        await conn.execute(
            f"""
            CREATE VIEW {db.table_with_schema('balance_issued')} AS
            SELECT id AS keyset, COALESCE(SUM(amount), 0) AS balance
            FROM {db.table_with_schema('promises')}
            WHERE c_ IS NOT NULL
            GROUP BY id;
        """
        )

        await conn.execute(
            f"""
            CREATE VIEW {db.table_with_schema('balance_redeemed')} AS
            SELECT id AS keyset, COALESCE(SUM(amount), 0) AS balance
            FROM {db.table_with_schema('proofs')}
            WHERE state = 'SPENT'
            GROUP BY id;
        """
        )
