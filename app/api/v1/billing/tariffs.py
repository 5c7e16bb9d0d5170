"""Resolve the tuition amount (and upstream tariff id) of a class."""

import logging
from decimal import Decimal
from typing import Dict, Iterable, Optional

from .schemas import TariffEntry

logger = logging.getLogger(__name__)


def _normalize_class_name(name: Optional[str]) -> str:
    return (name or "").strip().lower()


class TariffResolver:
    """
    Lookup built once per load from the tariff feed.
    Class id wins over class name; unknown classes get the default tuition amount.
    """

    def __init__(self, tariffs: Iterable[TariffEntry], default_amount: Decimal) -> None:
        self.default_amount = default_amount
        self._by_class_id: Dict[int, TariffEntry] = {}
        self._by_class_name: Dict[str, TariffEntry] = {}
        for tariff in tariffs:
            if tariff.amount is None or tariff.amount < 0:
                continue
            if tariff.class_id is not None:
                self._by_class_id.setdefault(tariff.class_id, tariff)
            name = _normalize_class_name(tariff.class_name)
            if name:
                self._by_class_name.setdefault(name, tariff)

    def find(self, class_id: Optional[int], class_name: Optional[str] = None) -> Optional[TariffEntry]:
        if class_id is not None and class_id in self._by_class_id:
            return self._by_class_id[class_id]
        return self._by_class_name.get(_normalize_class_name(class_name))

    def resolve_amount(self, class_id: Optional[int], class_name: Optional[str] = None) -> Decimal:
        tariff = self.find(class_id, class_name)
        if tariff is None:
            logger.warning(
                "No tariff for class id=%s name=%r, using default %s",
                class_id, class_name, self.default_amount,
            )
            return self.default_amount
        return tariff.amount

    def resolve_tariff_id(self, class_id: Optional[int], class_name: Optional[str] = None) -> Optional[int]:
        tariff = self.find(class_id, class_name)
        return tariff.tariff_id if tariff else None

    __call__ = resolve_amount
