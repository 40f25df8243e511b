from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any

from pydantic import BaseModel, Field

# --- Numeric primitives ---
PositiveAmount = Annotated[Decimal, Field(gt=0, max_digits=28, decimal_places=8)]
NonNegAmount = Annotated[Decimal, Field(ge=0, max_digits=28, decimal_places=8)]
CurrencyCode = Annotated[str, Field(min_length=3, max_length=8, pattern=r"^[A-Za-z]{3,8}$")]


def ok(data: Any) -> dict:
    """
    Success envelope shared by every endpoint: {"success": true, "data": ...}.
    Errors use {"success": false, "error", "message"} (see DealcrossError.to_dict).
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [d.model_dump(mode="json") if isinstance(d, BaseModel) else d for d in data]
    return {"success": True, "data": data}
