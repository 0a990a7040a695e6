"""
Mapping of search hits to stored products.
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from harvester.protocols import Product

_DATE_FORMATS = ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%d")
_FRACTION = re.compile(r"(\d*)(.*)", re.DOTALL)


class SearchHit(BaseModel):
    id: str = Field(alias="_id")
    source: Dict[str, Any] = Field(default_factory=dict, alias="_source")


class HitsTotal(BaseModel):
    value: int = 0


class SearchHits(BaseModel):
    total: HitsTotal = Field(default_factory=HitsTotal)
    hits: List[SearchHit] = Field(default_factory=list)


class SearchResponse(BaseModel):
    """The subset of the search API response the crawler relies on."""

    hits: SearchHits

    @property
    def total(self) -> int:
        return self.hits.total.value

    @property
    def records(self) -> List[SearchHit]:
        return self.hits.hits


def _string(source: Mapping[str, Any], key: str) -> Optional[str]:
    value = source.get(key)
    if isinstance(value, str) and value:
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _float(source: Mapping[str, Any], key: str) -> Optional[float]:
    value = source.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _int(source: Mapping[str, Any], key: str) -> Optional[int]:
    value = source.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _bool(source: Mapping[str, Any], key: str) -> bool:
    value = source.get(key)
    return value if isinstance(value, bool) else False


def _json(source: Mapping[str, Any], key: str) -> Optional[str]:
    if key not in source:
        return None
    return json.dumps(source[key])


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse the handful of date layouts the upstream emits. Unparseable values give None."""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    # Fractions of any length ("2024-01-02T03:04:05.1234567") are normalized to microseconds
    if "." in text:
        head, _, frac = text.partition(".")
        digits, rest = _FRACTION.match(frac).groups()  # type: ignore[union-attr]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}" if digits else head + rest
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def product_from_hit(elastic_id: str, source: Mapping[str, Any]) -> Product:
    return Product(
        elastic_id=elastic_id,
        product_id=_string(source, "productId"),
        item_id=_string(source, "itemId"),
        name=_string(source, "name"),
        brand=_string(source, "brand"),
        catalog=_string(source, "catalog"),
        artist=_string(source, "artist"),
        rating=_float(source, "rating"),
        list_price=_float(source, "listPrice"),
        sale_price=_float(source, "salePrice"),
        club_price=_float(source, "clubPrice"),
        sale_rank=_int(source, "saleRank"),
        customer_interest_index=_int(source, "customerInterestIndex"),
        in_stock=_bool(source, "inStock"),
        is_active=_bool(source, "isActive"),
        is_buyable=_bool(source, "isBuyable"),
        is_licensed=_bool(source, "licensed"),
        color_sequence=_string(source, "colorSequence"),
        definition_name=_string(source, "definitionName"),
        product_type=_string(source, "productType"),
        gtin=_string(source, "gtin"),
        design_keywords=_string(source, "designKeywords"),
        categories=_string(source, "categories"),
        categories_list=_json(source, "categoriesList"),
        keywords=_json(source, "keywords"),
        sales_list=_json(source, "salesList"),
        variants=_json(source, "variants"),
        sale_end_date=parse_datetime(source.get("saleEndDate")),
        year_created=parse_datetime(source.get("yearCreated")),
        applied_discount_id=_int(source, "appliedDiscountId"),
        raw_data=json.dumps(dict(source)),
    )
