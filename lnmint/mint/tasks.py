import asyncio
from typing import List

from loguru import logger

from ..core.base import Method, Unit
from ..lightning.base import LightningBackend
from .protocols import SupportsBackends, SupportsDb


class LedgerTasks(SupportsDb, SupportsBackends):
    async def dispatch_listeners(self) -> List[asyncio.Task]:
        tasks = []
        for method, unitbackends in self.backends.items():
            for unit, backend in unitbackends.items():
                logger.debug(
                    f"Dispatching backend invoice listener for {method} {unit} {backend.__class__.__name__}"
                )
                tasks.append(asyncio.create_task(self.invoice_listener(backend)))
        return tasks

    async def invoice_listener(self, backend: LightningBackend) -> None:
        if backend.supports_incoming_payment_stream:
            while True:
                try:
                    async for checking_id in backend.paid_invoices_stream():
                        await self.invoice_callback_dispatcher(checking_id)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Error in invoice listener: {e}")
                    logger.info("Restarting invoice listener...")
                    await asyncio.sleep(1)

    async def invoice_callback_dispatcher(self, checking_id: str) -> None:
        """Marks the mint quote of a settled incoming invoice as paid."""
        logger.debug(f"Invoice callback dispatcher: {checking_id}")
        quote = await self.crud.get_mint_quote(checking_id=checking_id, db=self.db)
        if not quote:
            logger.error(f"Quote not found for {checking_id}")
            return
        if not quote.unpaid:
            logger.trace(f"Quote {quote.quote} is already {quote.state}")
            return
        if await self.db_write._set_mint_quote_paid(quote.quote):
            logger.trace(f"Quote {quote.quote} set as PAID by invoice listener")

    async def _prune_expired_mint_quotes(self) -> int:
        """Deletes unpaid mint quotes whose invoice has expired.

        The backend is asked about every invoice first. A quote whose invoice settled
        is marked as paid instead, and a quote whose invoice status can't be determined
        is kept for the next run.
        """
        quotes = await self.crud.get_expired_mint_quotes(
            db=self.db, now=self.db.timestamp_now
        )
        deleted = 0
        for quote in quotes:
            try:
                backend = self.backends[Method[quote.method]][Unit[quote.unit]]
                status = await backend.get_invoice_status(quote.checking_id)
            except Exception as e:
                logger.error(
                    f"Could not check invoice of expired mint quote {quote.quote}: {e}"
                )
                continue
            if status.settled:
                logger.info(f"Expired mint quote {quote.quote} was paid")
                await self.db_write._set_mint_quote_paid(quote.quote)
                continue
            if not (status.pending or status.failed):
                logger.warning(
                    f"Expired mint quote {quote.quote}: invoice is {status.result.name}"
                )
                continue
            async with self.db.get_connection(
                lock_table="mint_quotes",
                lock_select_statement=f"quote='{quote.quote}'",
            ) as conn:
                if await self.crud.delete_unpaid_mint_quote(
                    quote_id=quote.quote, db=self.db, conn=conn
                ):
                    deleted += 1
        if deleted:
            logger.info(f"Pruned {deleted} expired mint quotes")
        return deleted
