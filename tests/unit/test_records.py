"""
Unit tests for search response parsing and product mapping.
"""

import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from harvester.crawler.records import SearchResponse, parse_datetime, product_from_hit


def test_search_response_exposes_total_and_records():
    body = json.dumps(
        {
            "took": 3,
            "hits": {
                "total": {"value": 2, "relation": "eq"},
                "hits": [{"_id": "a", "_source": {"name": "A"}}, {"_id": "b", "_source": {}}],
            },
        }
    )
    response = SearchResponse.model_validate_json(body)
    assert response.total == 2
    assert [hit.id for hit in response.records] == ["a", "b"]
    assert response.records[0].source == {"name": "A"}


def test_non_json_body_fails_validation():
    with pytest.raises(ValidationError):
        SearchResponse.model_validate_json(b"<html>blocked</html>")


def test_missing_hits_fails_validation():
    with pytest.raises(ValidationError):
        SearchResponse.model_validate_json(b'{"error": "bad query"}')


def test_product_mapping():
    source = {
        "productId": 12345,
        "itemId": "X1",
        "name": "Rose Border",
        "rating": 4,
        "listPrice": 7.99,
        "saleRank": 10.0,
        "inStock": True,
        "isBuyable": "yes",
        "licensed": False,
        "colorSequence": "1,2,3",
        "keywords": ["rose", "border"],
        "saleEndDate": "2024-05-01T00:00:00Z",
        "appliedDiscountId": 9,
    }
    product = product_from_hit("es-1", source)

    assert product.elastic_id == "es-1"
    assert product.product_id == "12345"
    assert product.rating == 4.0
    assert product.sale_rank == 10
    assert product.in_stock is True
    assert product.is_buyable is False
    assert product.is_licensed is False
    assert product.color_sequence == "1,2,3"
    assert json.loads(product.keywords) == ["rose", "border"]
    assert product.categories_list is None
    assert product.sale_end_date == datetime(2024, 5, 1, tzinfo=timezone.utc)
    assert product.applied_discount_id == 9
    assert json.loads(product.raw_data) == source
    assert product.status == "pending"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2023-02-03T04:05:06", datetime(2023, 2, 3, 4, 5, 6)),
        ("2023-02-03", datetime(2023, 2, 3)),
        ("2023-02-03T04:05:06.1234567", datetime(2023, 2, 3, 4, 5, 6, 123456)),
        ("2023-02-03T04:05:06.5Z", datetime(2023, 2, 3, 4, 5, 6, 500000, tzinfo=timezone.utc)),
        ("not a date", None),
        ("", None),
        (20230203, None),
    ],
)
def test_parse_datetime(value, expected):
    assert parse_datetime(value) == expected
