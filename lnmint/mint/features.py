import time
from typing import Any, Dict, List, Optional, Type, Union

from ..core.mint_info import MintInfo
from ..core.models import (
    MeltMethodSetting,
    MintInfoContact,
    MintMethodSetting,
)
from ..core.nuts import (
    DLEQ_NUT,
    FEE_RETURN_NUT,
    MELT_NUT,
    MINT_NUT,
    RESTORE_NUT,
    STATE_NUT,
    SWAP_NUT,
)
from ..core.settings import settings
from .protocols import SupportsBackends, SupportsPubkey

_VERSION_PREFIX = "lnmint"

# features without options, always available
_SUPPORTED_NUTS = (SWAP_NUT, STATE_NUT, FEE_RETURN_NUT, RESTORE_NUT, DLEQ_NUT)


class LedgerFeatures(SupportsBackends, SupportsPubkey):
    def get_info(self) -> MintInfo:
        """Public description of the mint: who runs it, its identity key and which
        units can be minted and melted with which payment method."""
        contact = [
            MintInfoContact(method=method, info=info)
            for method, info in settings.mint_info_contact
            if method and info
        ]
        return MintInfo(
            name=settings.mint_info_name,
            pubkey=self.pubkey.serialize().hex() if self.pubkey else None,
            version=f"{_VERSION_PREFIX}/{settings.version}",
            description=settings.mint_info_description,
            description_long=settings.mint_info_description_long,
            contact=contact,
            nuts=self.mint_features,
            icon_url=settings.mint_info_icon_url,
            urls=settings.mint_info_urls,
            motd=settings.mint_info_motd,
            time=int(time.time()),
        )

    @property
    def mint_features(self) -> Dict[int, Union[List[Any], Dict[str, Any]]]:
        features: Dict[int, Union[List[Any], Dict[str, Any]]] = {
            MINT_NUT: dict(
                methods=self._method_settings(
                    MintMethodSetting, settings.mint_max_peg_in
                ),
                disabled=settings.mint_peg_out_only,
            ),
            MELT_NUT: dict(
                methods=self._method_settings(
                    MeltMethodSetting, settings.mint_max_peg_out
                ),
                disabled=False,
            ),
        }
        for nut in _SUPPORTED_NUTS:
            features[nut] = dict(supported=True)
        return features

    def _method_settings(
        self,
        setting_cls: Type[Union[MintMethodSetting, MeltMethodSetting]],
        max_amount: Optional[int],
    ) -> List[Dict[str, Any]]:
        """One entry per (method, unit) pair that has a backend."""
        method_settings = []
        for method, unit_backends in self.backends.items():
            for unit in unit_backends:
                setting = setting_cls(method=method.name, unit=unit.name)
                if max_amount:
                    setting.min_amount = 0
                    setting.max_amount = max_amount
                method_settings.append(setting.model_dump())
        return method_settings
