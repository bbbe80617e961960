import pytest

from rankcheck.normalize import (
    BrandSignature,
    is_brand_match,
    normalize_branch,
    normalize_brand,
    normalize_listing_title,
)


def test_normalize_brand_drops_whitespace_only():
    assert normalize_brand("  Bright  Smile\tDental ") == "brightsmiledental"
    assert normalize_brand("A&B Lettings") == "a&blettings"


def test_normalize_branch_drops_punctuation():
    assert normalize_branch("St. Johns") == "stjohns"
    assert normalize_branch("St Johns") == "stjohns"
    assert normalize_branch("Kings-Cross (N1)") == "kingscrossn1"


def test_listing_title_uses_brand_rule():
    assert normalize_listing_title("Bright Smile Dental London") == "brightsmiledentallondon"


@pytest.mark.parametrize(
    "title,brand,branch,expected",
    [
        ("Belfast Property People Ltd", "Property People", "Belfast", True),
        ("Property People - Belfast", "Property People", "Belfast", True),
        ("Bright Smile Dental London", "Bright Smile", "London", True),
        ("Bright Smile Dental Leeds", "Bright Smile", "London", False),
        ("Smile Bright London", "Bright Smile", "London", False),
        ("St. Johns Bright Smile", "Bright Smile", "St Johns", False),
        ("StJohns Bright Smile", "Bright Smile", "St. Johns", True),
    ],
)
def test_match_requires_both_tokens_in_any_order(title, brand, branch, expected):
    assert BrandSignature(brand, branch).matches(title) is expected


def test_is_brand_match_on_normalized_values():
    assert is_brand_match("belfastpropertypeopleltd", "propertypeople", "belfast")
    assert not is_brand_match("propertypeopleltd", "propertypeople", "belfast")
