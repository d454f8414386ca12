import pytest

from arbwatcher import router
from arbwatcher.router import (
    BILBASEN,
    GASPEDAAL,
    GENERIC,
    LEBONCOIN,
    MARKTPLAATS,
    apply_trim,
    build_paginated_url,
    core_parse_search_page,
    detect_total_pages,
    parse_search_page,
    select_parser_by_hostname,
)


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://www.marktplaats.nl/l/auto-s/toyota/", MARKTPLAATS),
        ("https://marktplaats.nl/l/auto-s/", MARKTPLAATS),
        ("https://www.leboncoin.fr/recherche?category=2", LEBONCOIN),
        ("https://www.gaspedaal.nl/toyota/yaris", GASPEDAAL),
        ("https://WWW.BILBASEN.DK/brugt/bil/toyota", BILBASEN),
        ("https://www.autoscout24.de/lst/toyota", GENERIC),
        ("not a url", GENERIC),
        ("", GENERIC),
    ],
)
def test_select_parser_by_hostname(url, expected):
    assert select_parser_by_hostname(url) == expected


def test_parse_search_page_reports_parser_and_strategy():
    html = """
    <html><body>
      <article class="Listing_listing__a1">
        <a href="/brugt/bil/toyota/yaris/6001234"><h3>Toyota Yaris Hybrid</h3></a>
        <div>189.900 kr.</div>
      </article>
    </body></html>
    """
    page = parse_search_page(html, "https://www.bilbasen.dk/brugt/bil/toyota/yaris")

    assert page.parser == BILBASEN
    assert page.strategy == "article_cards"
    assert len(page.listings) == 1
    assert core_parse_search_page(html, "https://www.bilbasen.dk/brugt/bil/toyota/yaris") == list(
        page.listings
    )


def test_parse_search_page_without_listings():
    page = parse_search_page("<html></html>", "https://www.leboncoin.fr/recherche")
    assert page.parser == LEBONCOIN
    assert page.strategy is None
    assert page.listings == ()


def test_build_paginated_url():
    base = "https://www.leboncoin.fr/recherche?category=2&u_car_brand=TOYOTA"

    assert build_paginated_url(base, 1) == base
    assert build_paginated_url(base, 3) == base + "&page=3"
    assert build_paginated_url(base + "&page=2", 4) == base + "&page=4"
    assert (
        build_paginated_url("https://www.marktplaats.nl/l/auto-s/?a=1#q:yaris", 2)
        == "https://www.marktplaats.nl/l/auto-s/?a=1&page=2#q:yaris"
    )


def test_detect_total_pages():
    html = """
    <nav>
      <a href="?page=2">2</a>
      <a href="/l/auto-s/toyota/p/7/">7</a>
      <a href="/help">Help</a>
    </nav>
    """
    assert detect_total_pages(html) == 7
    assert detect_total_pages("<p>single page</p>") == 1
    assert detect_total_pages("") == 1


def test_apply_trim_leboncoin_inserts_text_before_kst():
    url = "https://www.leboncoin.fr/recherche?category=2&u_car_brand=TOYOTA&kst=k"
    assert apply_trim(url, "GR Sport") == (
        "https://www.leboncoin.fr/recherche?category=2&u_car_brand=TOYOTA&text=GR+Sport&kst=k"
    )


def test_apply_trim_leboncoin_replaces_existing_text():
    url = "https://www.leboncoin.fr/recherche?category=2&text=yaris"
    assert apply_trim(url, "yaris cross") == (
        "https://www.leboncoin.fr/recherche?category=2&text=yaris+cross"
    )


def test_apply_trim_bilbasen_sets_free_text():
    url = "https://www.bilbasen.dk/brugt/bil/toyota/yaris?fuel=3"
    assert apply_trim(url, "H3") == "https://www.bilbasen.dk/brugt/bil/toyota/yaris?fuel=3&free=H3"


def test_apply_trim_marktplaats_rewrites_fragment_query():
    url = "https://www.marktplaats.nl/l/auto-s/toyota/#f:10882|PriceCentsTo:2000000|q:old"
    assert apply_trim(url, "dynamic") == (
        "https://www.marktplaats.nl/l/auto-s/toyota/#q:dynamic|f:10882|PriceCentsTo:2000000"
    )
    plain = "https://www.marktplaats.nl/l/auto-s/toyota/"
    assert apply_trim(plain, "dynamic") == plain


def test_apply_trim_leaves_other_urls_alone():
    url = "https://www.gaspedaal.nl/toyota/yaris"
    assert apply_trim(url, "executive") == url
    assert apply_trim("https://www.leboncoin.fr/recherche?category=2", None) == (
        "https://www.leboncoin.fr/recherche?category=2"
    )
    assert apply_trim("https://www.leboncoin.fr/recherche?category=2", "  ") == (
        "https://www.leboncoin.fr/recherche?category=2"
    )


def test_router_reexports_url_normalizer():
    assert router.normalize_listing_url("/a", "https://www.gaspedaal.nl/x") == (
        "https://www.gaspedaal.nl/a"
    )
