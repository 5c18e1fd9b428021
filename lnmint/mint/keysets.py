import copy
from typing import List, Optional

from loguru import logger

from ..core.base import Method, MintKeyset, Unit
from ..core.crypto.keys import derivation_path_for
from ..core.errors import KeysetError, KeysetNotFoundError
from ..core.models import KeysetsResponseKeyset, KeysResponseKeyset
from .protocols import SupportsBackends, SupportsDb, SupportsKeysets, SupportsSeed


class LedgerKeysets(SupportsKeysets, SupportsSeed, SupportsDb, SupportsBackends):
    # ------- KEYS -------

    def derive_keyset(
        self, unit: Unit, counter: int, amounts: Optional[List[int]] = None
    ) -> MintKeyset:
        """Derives the keyset of `unit` at rotation `counter` from the seed.

        The result only depends on the seed, the unit and the counter. It is neither
        stored nor activated.
        """
        return MintKeyset(
            seed=self.seed,
            derivation_path=derivation_path_for(unit.value, counter),
            amounts=amounts or self.amounts,
            unit=unit.name,
        )

    def get_active_keyset(self, unit: Unit) -> MintKeyset:
        """Returns the keyset new signatures of `unit` are made with.

        Raises:
            KeysetNotFoundError: If there is no active keyset for the unit.
        """
        for keyset in self.keysets.values():
            if keyset.active and keyset.unit == unit:
                return keyset
        raise KeysetNotFoundError(f"no active keyset for unit {unit.name}")

    def get_keyset_by_id(self, keyset_id: str) -> MintKeyset:
        if keyset_id not in self.keysets:
            raise KeysetNotFoundError(keyset_id)
        return self.keysets[keyset_id]

    async def rotate_next_keyset(
        self, unit: Unit, max_order: Optional[int] = None
    ) -> MintKeyset:
        """
        This function:
            1. finds the highest counter keyset for `unit`
            2. derives the keyset with the next counter
            3. de-activates the currently active keyset of the unit
            4. stores both to DB in a single transaction

        Args:
            unit (Unit): Unit of the keyset.
            max_order (Optional[int], optional): The number of keys to generate, which correspond to powers of 2.
        Returns:
            MintKeyset: The new active keyset
        """
        logger.info(f"Rotating keyset for unit {unit.name}")
        counters = [k.counter for k in self.keysets.values() if k.unit == unit]
        counter = max(counters) + 1 if counters else 0

        # keys amounts for this keyset: if max_order is None we use `self.amounts`
        amounts = [2**i for i in range(max_order)] if max_order else None
        new_keyset = self.derive_keyset(unit, counter, amounts=amounts)
        new_keyset.active = True
        new_keyset.valid_from = self.db.timestamp_now

        previous = [k for k in self.keysets.values() if k.active and k.unit == unit]
        now = self.db.timestamp_now
        async with self.db.get_connection(lock_table="keysets") as conn:
            for keyset in previous:
                logger.debug(f"De-activating keyset {keyset.id}")
                deactivated = copy.copy(keyset)
                deactivated.active = False
                deactivated.valid_to = now
                await self.crud.update_keyset(keyset=deactivated, db=self.db, conn=conn)
            await self.crud.store_keyset(keyset=new_keyset, db=self.db, conn=conn)

        # the loaded keysets only change once the rotation is committed
        for keyset in previous:
            keyset.active = False
            keyset.valid_to = now
        self.keysets[new_keyset.id] = new_keyset
        logger.info(f"New keyset {new_keyset.id} for {new_keyset.derivation_path}")
        return new_keyset

    async def init_keysets(self) -> None:
        """Loads all past keysets from the db and re-derives their keys from the seed.
        Every unit that has a backend but no active keyset gets a new one.

        Raises:
            Exception: If a stored keyset id does not match its derived keys.
            KeysetError: If no keyset is active after initialization.
        """
        # the keys are re-derived at instantiation, which checks the stored ids
        tmp_keysets: List[MintKeyset] = await self.crud.get_keyset(
            db=self.db, seed=self.seed
        )
        for k in tmp_keysets:
            self.keysets[k.id] = k
        logger.info(f"Loaded {len(self.keysets)} keysets from database.")

        for unit in self.backends.get(Method.bolt11, {}):
            try:
                keyset = self.get_active_keyset(unit)
            except KeysetNotFoundError:
                keyset = await self.rotate_next_keyset(unit)
            logger.info(f"Current keyset for {unit.name}: {keyset.id}")

        if not any([k.active for k in self.keysets.values()]):
            raise KeysetError("No active keyset found.")

    # ------- EXCHANGE -------

    def get_keysets(self) -> List[KeysetsResponseKeyset]:
        """Returns all keysets of the mint, active and inactive."""
        return [
            KeysetsResponseKeyset(id=k.id, unit=k.unit.name, active=k.active)
            for k in self.keysets.values()
        ]

    def get_keyset_keys(self, keyset_id: str) -> KeysResponseKeyset:
        """Returns the hex public keys of a keyset for each supported amount."""
        keyset = self.get_keyset_by_id(keyset_id)
        return KeysResponseKeyset(
            id=keyset.id, unit=keyset.unit.name, keys=keyset.public_keys_hex
        )

    def get_keys(self) -> List[KeysResponseKeyset]:
        """Returns the public keys of all active keysets."""
        return [
            self.get_keyset_keys(k.id) for k in self.keysets.values() if k.active
        ]

    # ------- BALANCE -------

    async def get_balance(self, keyset: MintKeyset) -> int:
        """Amount of ecash of `keyset` in circulation: issued minus redeemed."""
        return await self.crud.get_balance(db=self.db, keyset_id=keyset.id)

    async def get_unit_balance(self, unit: Unit) -> int:
        """Amount of ecash in circulation over all keysets of `unit`."""
        balance = 0
        for keyset in self.keysets.values():
            if keyset.unit == unit:
                balance += await self.get_balance(keyset)
        return balance
