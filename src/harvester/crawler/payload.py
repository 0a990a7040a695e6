"""
Search query payload construction.

The default template filters in-stock stock designs, sorts by sale rank and
rating and requests the facet aggregations the catalogue UI shows. User
overrides are deep-merged on top; pagination always belongs to the crawler.
"""

from __future__ import annotations

import copy
import json
from typing import Any, Dict, Mapping, Optional

from harvester.exceptions import PayloadError


def _terms_agg(field: str) -> Dict[str, Any]:
    return {"terms": {"field": field, "order": {"_count": "desc"}, "size": 1000}}


def default_payload(from_: int, size: int) -> Dict[str, Any]:
    return {
        "track_total_hits": True,
        "sort": [{"saleRank": "desc"}, {"rating": "desc"}],
        "_source": {"excludes": ["*.productTabContent", "*.mainFeatures"]},
        "query": {
            "bool": {
                "should": [],
                "must": [
                    {"term": {"definitionName": "StockDesign"}},
                    {"term": {"inStock": True}},
                    {"range": {"listPrice": {"gt": 0}}},
                ],
                "must_not": [
                    {"term": {"definitionName": "PrintArt"}},
                    {"term": {"definitionName": "SVG"}},
                ],
            }
        },
        "from": from_,
        "size": size,
        "aggs": {
            "Brands": _terms_agg("brand.raw"),
            "catalog": _terms_agg("catalog.raw"),
            "Artists": _terms_agg("artist.raw"),
            "Categories": _terms_agg("categoriesList.keyword"),
        },
    }


def deep_merge(target: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Merge ``overrides`` into ``target`` in place and return it.

    Nested objects are merged key by key; any other value (lists included)
    replaces the existing one outright.
    """
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            deep_merge(existing, value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def build_search_payload(from_: int, size: int, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    payload = default_payload(from_, size)
    if overrides:
        deep_merge(payload, overrides)
    # Pagination is owned by the crawler, whatever the overrides say
    payload["from"] = from_
    payload["size"] = size
    return payload


def encode_payload(payload: Mapping[str, Any]) -> bytes:
    try:
        return json.dumps(payload, allow_nan=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise PayloadError(f"failed to serialize search payload: {e}") from e
