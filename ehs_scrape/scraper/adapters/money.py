from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Optional

_AMOUNT_PATTERN = re.compile(r"\d[\d,]*(?:\.\d+)?")


def parse_money(value: str | None) -> Optional[Decimal]:
    """Parse amounts such as ``£5,000.50`` into a ``Decimal``.

    Returns ``None`` when no number is present so a blank cell never reads
    as a confirmed zero fine.
    """

    match = _AMOUNT_PATTERN.search(value or "")
    if not match:
        return None
    try:
        return Decimal(match.group(0).replace(",", ""))
    except InvalidOperation:
        return None
