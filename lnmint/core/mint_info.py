from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .base import Method, Unit
from .models import MintInfoContact
from .nuts import MELT_NUT, MINT_NUT


class MintInfo(BaseModel):
    name: Optional[str] = None
    pubkey: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    description_long: Optional[str] = None
    contact: Optional[List[MintInfoContact]] = None
    motd: Optional[str] = None
    icon_url: Optional[str] = None
    urls: Optional[List[str]] = None
    time: Optional[int] = None
    nuts: Dict[int, Any]

    def __str__(self):
        return f"{self.name} ({self.description})"

    def supports_nut(self, nut: int) -> bool:
        if self.nuts is None:
            return False
        return nut in self.nuts

    def supports_method(self, nut: int, method: Method, unit: Unit) -> bool:
        """Whether the mint offers `method` for `unit` under the mint or melt nut."""
        assert nut in (MINT_NUT, MELT_NUT), "only mint and melt have methods"
        if not self.supports_nut(nut):
            return False
        for entry in self.nuts[nut].get("methods", []):
            if entry["method"] == method.name and entry["unit"] == unit.name:
                return True
        return False
