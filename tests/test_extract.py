from arbwatcher.models import CURRENCY_EUR, PRICE_ONE_OFF, PRICE_PER_MONTH, ScrapedListing
from arbwatcher.parsers.shared import (
    attribute_value,
    dedupe_listings,
    detect_price_type,
    extract_dkk_price,
    extract_euro_price,
    extract_mileage,
    extract_title,
    extract_year,
    normalize_listing_url,
    normalize_text,
    run_strategies,
)


def test_normalize_text_collapses_non_breaking_spaces():
    assert normalize_text("€\u00a018.950\u202f ,-  ") == "€ 18.950 ,-"
    assert normalize_text("12&nbsp;500&euro;") == "12 500€"


def test_extract_euro_price_reads_common_layouts():
    assert extract_euro_price("€ 18.950,-") == 18950
    assert extract_euro_price("12 500 €") == 12500
    assert extract_euro_price("Prijs: 21.000 EUR") == 21000
    assert extract_euro_price("vendue 15990 euros") == 15990
    assert extract_euro_price("Prix : 9 990") == 9990
    assert extract_euro_price("€\u00a014.250") == 14250


def test_extract_euro_price_rejects_out_of_range_values():
    assert extract_euro_price("€ 50") is None
    assert extract_euro_price("€ 600.000") is None
    assert extract_euro_price("") is None
    assert extract_euro_price("Prijs op aanvraag") is None


def test_extract_euro_price_skips_implausible_match_for_next_one():
    assert extract_euro_price("Korting € 50, nu € 17.500") == 17500


def test_extract_dkk_price_reads_kroner():
    assert extract_dkk_price("189.900 kr.") == 189900
    assert extract_dkk_price("Kr. 245.000") == 245000
    assert extract_dkk_price("1.250.000 DKK") == 1250000


def test_extract_dkk_price_does_not_merge_trim_digits():
    assert extract_dkk_price("Toyota Yaris 1,5 Hybrid H3 189.900 kr.") == 189900


def test_extract_year_bounds():
    assert extract_year("Toyota Yaris 2019, 45.000 km") == 2019
    assert extract_year("Bouwjaar 1999") is None
    assert extract_year("Model 2099") is None
    assert extract_year("") is None


def test_extract_mileage_variants():
    assert extract_mileage("2021 · 45.000 km") == 45000
    assert extract_mileage("Kilométrage : 120 000") == 120000
    assert extract_mileage("geen kilometerstand") is None


def test_detect_price_type():
    assert detect_price_type("€ 299 /maand") == PRICE_PER_MONTH
    assert detect_price_type("279 € par mois") == PRICE_PER_MONTH
    assert detect_price_type("€ 15.000") == PRICE_ONE_OFF


def test_extract_title_prefers_heading_then_title_attribute():
    assert extract_title("<div><h3> Toyota  Yaris </h3></div>") == "Toyota Yaris"
    assert extract_title('<div><a title="Toyota Aygo X">x</a></div>') == "Toyota Aygo X"
    assert extract_title("<html><head><title>Results</title></head></html>") == "Results"
    assert extract_title("<div>nothing</div>") is None


def test_normalize_listing_url_resolves_relative_links():
    base = "https://www.marktplaats.nl/l/auto-s/toyota/#q:yaris"
    assert normalize_listing_url("/v/auto-s/m123", base) == "https://www.marktplaats.nl/v/auto-s/m123"
    assert normalize_listing_url("v/auto-s/m123", base) == "https://www.marktplaats.nl/v/auto-s/m123"
    assert normalize_listing_url("//cdn.example.com/a", base) == "https://cdn.example.com/a"
    assert normalize_listing_url("https://other.nl/x", base) == "https://other.nl/x"
    assert normalize_listing_url("", base) == ""


def test_dedupe_listings_keeps_first_occurrence():
    first = ScrapedListing("Toyota Yaris", 15000, CURRENCY_EUR, "https://a/1")
    duplicate = ScrapedListing("Toyota Yaris (copy)", 14000, CURRENCY_EUR, "https://a/1")
    other = ScrapedListing("Toyota Aygo", 9000, CURRENCY_EUR, "https://a/2")
    assert dedupe_listings([first, duplicate, other]) == [first, other]


def test_attribute_value_reads_lists_and_mappings():
    attributes = [
        {"key": "regdate", "value": "2020"},
        {"key": "mileage", "value": "", "value_label": "52 000 km"},
    ]
    assert attribute_value(attributes, "regdate") == "2020"
    assert attribute_value(attributes, "mileage") == "52 000 km"
    assert attribute_value({"year": 2021}, "constructionYear", "year") == 2021
    assert attribute_value(None, "year") is None


def test_run_strategies_falls_through_failing_strategy():
    listing = ScrapedListing("Toyota Yaris", 15000, CURRENCY_EUR, "https://a/1")

    def broken(soup, html, url):
        raise KeyError("layout changed")

    def empty(soup, html, url):
        return []

    def working(soup, html, url):
        return [listing, listing]

    listings, name = run_strategies(
        (("broken", broken), ("empty", empty), ("working", working)),
        "<html></html>",
        "https://a/",
    )
    assert listings == [listing]
    assert name == "working"


def test_run_strategies_handles_empty_html():
    assert run_strategies((("any", lambda soup, html, url: []),), "", "https://a/") == ([], None)
