from datetime import date
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from reservation_engine.schemas.reservation import ApiModel


class SearchFilters(BaseModel):
    """
    Closed set of property search filters.

    Unknown keys are rejected, so every filter the search understands is
    listed here.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    location: Optional[str] = None
    price_min: Optional[Decimal] = Field(default=None, ge=0)
    price_max: Optional[Decimal] = Field(default=None, ge=0)
    beds: Optional[int] = Field(default=None, ge=1)
    guests: Optional[int] = Field(default=None, ge=1)
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    page: Optional[int] = Field(default=None, ge=1)
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    sort_by: Optional[Literal["price", "createdAt", "title", "bed"]] = None
    sort_order: Optional[Literal["asc", "desc"]] = None

    def to_query_params(self) -> dict[str, Any]:
        params = {
            "location": self.location,
            "priceMin": self.price_min,
            "priceMax": self.price_max,
            "bed": self.beds,
            "guests": self.guests,
            "from": self.check_in.isoformat() if self.check_in else None,
            "to": self.check_out.isoformat() if self.check_out else None,
            "page": self.page,
            "limit": self.limit,
            "sortBy": self.sort_by,
            "sortOrder": self.sort_order,
        }
        return {
            key: str(value) if isinstance(value, Decimal) else value
            for key, value in params.items()
            if value not in (None, "")
        }


class PropertySummary(ApiModel):
    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    title: str = ""
    location: Optional[str] = None
    price: Decimal = Decimal("0")
    bed: Optional[int] = None
    max_guests: Optional[int] = None
