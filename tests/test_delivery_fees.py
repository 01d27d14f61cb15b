import pytest

from delivery_fees import (
    DELIVERY_FEES,
    NotServiceable,
    delivery_fee_stats,
    find_fee,
    format_postal_code,
    is_in_delivery_area,
    list_delivery_fees,
    normalize_postal_code,
    resolve_fee,
    search_postal_codes,
)


def test_normalize_strips_whitespace_and_uppercases():
    assert normalize_postal_code(" h2x 2c9 ") == "H2X2C9"
    assert normalize_postal_code("h2x\t2c9") == "H2X2C9"
    assert normalize_postal_code(None) == ""


def test_format_only_splits_six_character_codes():
    assert format_postal_code("h2x2c9") == "H2X 2C9"
    assert format_postal_code("h2x") == "H2X"


@pytest.mark.parametrize("raw", ["h2x2c9", "H2X 2C9", "H2X2C9", "  h2X 2c9 "])
def test_case_and_spacing_do_not_change_the_result(raw):
    quote = resolve_fee(raw)
    assert quote.postal_code == "H2X 2C9"
    assert quote.fee_cents == 1600
    assert quote.match_type == "partial"
    assert quote.matched_key == "H2X"


def test_exact_code_wins_over_its_prefix():
    # "H3C 1T3" is listed at 17.00 while the H3C area is 22.00
    quote = resolve_fee("h3c1t3")
    assert quote.match_type == "exact"
    assert quote.fee_cents == 1700

    assert resolve_fee("H3C 9Z9").fee_cents == 2200


def test_store_area_code_resolves_through_prefix():
    quote = resolve_fee("H3G 2A9")
    assert quote.match_type == "partial"
    assert quote.fee_cents == 1600

    exact = resolve_fee("H3G 1T7")
    assert exact.match_type == "exact"
    assert exact.fee_cents == 1600


def test_bare_area_code_is_an_exact_key():
    quote = resolve_fee("h1c")
    assert quote.postal_code == "H1C"
    assert quote.match_type == "exact"
    assert quote.fee_cents == 3200


def test_unlisted_area_is_not_serviceable():
    with pytest.raises(NotServiceable) as excinfo:
        resolve_fee("Z9Z 9Z9")
    assert excinfo.value.postal_code == "Z9Z 9Z9"


def test_code_listed_only_as_full_code_needs_exact_match():
    # J3E only appears as "J3E 0H7"
    assert resolve_fee("J3E 0H7").fee_cents == 6000
    with pytest.raises(NotServiceable):
        resolve_fee("J3E 1A1")


@pytest.mark.parametrize("raw", ["H2", "h", "", "  ", None])
def test_short_codes_never_fall_back_to_prefix(raw):
    with pytest.raises(NotServiceable):
        resolve_fee(raw)


def test_table_is_read_only():
    with pytest.raises(TypeError):
        DELIVERY_FEES["H2X"] = 1


def test_every_fee_is_whole_cents():
    assert all(isinstance(fee, int) and fee > 0 for fee in DELIVERY_FEES.values())
    assert all(len(key) in (3, 7) for key in DELIVERY_FEES)


def test_is_in_delivery_area():
    assert is_in_delivery_area("h2x 2c9") is True
    assert is_in_delivery_area("Z9Z 9Z9") is False


def test_find_fee_returns_none_outside_the_area():
    quote = find_fee("h3g1t7")
    assert quote.fee_cents == 1600
    assert quote.postal_code == "H3G 1T7"
    assert quote.match_type == "exact"
    assert find_fee("Z9Z 9Z9") is None
    assert find_fee(None) is None


def test_list_delivery_fees_returns_a_copy():
    fees = list_delivery_fees()
    fees["H2X"] = 0
    assert DELIVERY_FEES["H2X"] == 1600


def test_stats():
    stats = delivery_fee_stats()
    assert stats["totalAreas"] == len(DELIVERY_FEES)
    assert stats["minFee"] == min(DELIVERY_FEES.values())
    assert stats["maxFee"] == 6000
    assert stats["uniqueFees"] == sorted(set(DELIVERY_FEES.values()))
    assert stats["minFee"] <= stats["averageFee"] <= stats["maxFee"]


def test_search_lists_the_area_first_then_its_codes():
    results = search_postal_codes("h3t")
    assert results[0] == {"postalCode": "H3T", "fee": 1000}
    assert [r["postalCode"] for r in results[1:]] == ["H3T 1E2", "H3T 1L5", "H3T 1M5"]


def test_search_rejects_one_character_prefix():
    with pytest.raises(ValueError):
        search_postal_codes("H")
