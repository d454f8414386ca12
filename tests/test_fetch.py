from typing import Optional

import pytest
import requests

from arbwatcher.fetch import (
    SCRAPE_BLOCKED,
    SCRAPE_FAILED,
    SCRAPE_SUCCESS,
    SCRAPE_ZERO_LISTINGS,
    FetchError,
    FetchProfile,
    FetchResponse,
    RetryPolicy,
    SearchScraper,
    ZyteClient,
    build_profile,
    detect_blocked_content,
    extract_diagnostics,
)
from arbwatcher.models import ScrapedPage
from arbwatcher.router import BILBASEN, LEBONCOIN, MARKTPLAATS, build_paginated_url

MARKTPLAATS_URL = "https://www.marktplaats.nl/l/auto-s/toyota/?query=yaris"
LEBONCOIN_URL = "https://www.leboncoin.fr/recherche?category=2&u_car_brand=TOYOTA"

BLOCKED_PAGE = """
<html><body>
  <h1>Verify you are human</h1>
  <div>captcha required</div>
</body></html>
"""
EMPTY_RESULTS_PAGE = "<html><body><p>Aucune annonce ne correspond</p></body></html>"


def marktplaats_page(*ids, extra=""):
    cards = "".join(
        f"""
        <li class="hz-Listing hz-Listing--list-item">
          <a class="hz-Listing-coverLink" href="/v/auto-s/toyota/m{listing_id}">
            <h3 class="hz-Listing-title">Toyota Yaris Hybrid {listing_id}</h3>
          </a>
          <span class="hz-Listing-price">€ 15.500,-</span>
        </li>
        """
        for listing_id in ids
    )
    return f"<html><body><ul>{cards}</ul>{extra}</body></html>"


class FakeClient:
    """Serves canned pages per URL; the last page for a URL repeats."""

    def __init__(self, responses):
        self.responses = {url: list(pages) for url, pages in responses.items()}
        self.calls = []

    def fetch(self, url: str, profile: FetchProfile) -> FetchResponse:
        self.calls.append((url, profile))
        pages = self.responses[url]
        page = pages.pop(0) if len(pages) > 1 else pages[0]
        if isinstance(page, Exception):
            raise page
        return FetchResponse(html=page, status_code=200)


def build_scraper(responses, **kwargs):
    sleeps = []
    client = FakeClient(responses)
    scraper = SearchScraper(client=client, sleep=sleeps.append, **kwargs)
    return scraper, client, sleeps


def test_marktplaats_escalates_profiles_until_listings_appear():
    scraper, client, sleeps = build_scraper(
        {MARKTPLAATS_URL: [BLOCKED_PAGE, BLOCKED_PAGE, marktplaats_page(1, 2)]}
    )

    outcome = scraper.scrape_page(MARKTPLAATS_URL)

    assert outcome.status == SCRAPE_SUCCESS
    assert outcome.ok
    assert len(outcome.listings) == 2
    assert outcome.method == "MARKTPLAATS:html_cards"
    assert outcome.profile_level == 3
    assert outcome.retry_count == 2
    assert sleeps == [1.0, 3.0]

    profiles = [profile for _, profile in client.calls]
    assert [profile.level for profile in profiles] == [1, 2, 3]
    assert profiles[0].geolocation is None
    assert profiles[1].geolocation == "NL"
    assert profiles[1].javascript is True
    assert profiles[2].wait_seconds == 2.0


def test_marktplaats_retries_zero_listing_pages():
    scraper, client, _ = build_scraper(
        {MARKTPLAATS_URL: [EMPTY_RESULTS_PAGE, marktplaats_page(1)]}
    )

    outcome = scraper.scrape_page(MARKTPLAATS_URL)

    assert outcome.ok
    assert outcome.profile_level == 2
    assert len(client.calls) == 2


def test_marktplaats_reports_blocked_with_diagnostics_after_last_profile():
    scraper, client, _ = build_scraper({MARKTPLAATS_URL: [BLOCKED_PAGE]})

    outcome = scraper.scrape_page(MARKTPLAATS_URL)

    assert outcome.status == SCRAPE_BLOCKED
    assert len(client.calls) == 3
    assert outcome.listings == ()
    diagnostics = outcome.diagnostics
    assert diagnostics["marketplace"] == MARKTPLAATS
    assert diagnostics["html_length"] == len(BLOCKED_PAGE)
    assert "Verify you are human" in diagnostics["html_snippet"]
    assert diagnostics["detected_blocked"] is True
    assert diagnostics["matched_keyword"] == "captcha"
    assert diagnostics["strategy"] is None
    assert diagnostics["profile_level"] == 3
    assert diagnostics["retry_count"] == 2


def test_other_marketplaces_do_not_escalate():
    scraper, client, sleeps = build_scraper({LEBONCOIN_URL: [BLOCKED_PAGE]})

    outcome = scraper.scrape_page(LEBONCOIN_URL)

    assert outcome.status == SCRAPE_BLOCKED
    assert len(client.calls) == 1
    assert client.calls[0][1] == FetchProfile(level=1)
    assert sleeps == []


def test_zero_listings_is_terminal_without_escalation():
    scraper, client, _ = build_scraper({LEBONCOIN_URL: [EMPTY_RESULTS_PAGE]})

    outcome = scraper.scrape_page(LEBONCOIN_URL)

    assert outcome.status == SCRAPE_ZERO_LISTINGS
    assert outcome.reason == "No listings extracted"
    assert outcome.diagnostics["html_length"] == len(EMPTY_RESULTS_PAGE)
    assert len(client.calls) == 1


def test_fetch_errors_are_retried_then_reported():
    scraper, client, sleeps = build_scraper(
        {LEBONCOIN_URL: [FetchError("Provider returned HTTP 520", status_code=520)]}
    )

    outcome = scraper.scrape_page(LEBONCOIN_URL)

    assert outcome.status == SCRAPE_FAILED
    assert len(client.calls) == 3
    assert sleeps == [1.0, 3.0]
    assert outcome.retry_count == 2
    assert outcome.reason.startswith("Fetch failed after 3 attempts")
    assert "HTTP 520" in outcome.reason


def test_failed_outcome_reports_last_escalated_profile():
    scraper, client, _ = build_scraper({MARKTPLAATS_URL: [FetchError("connection reset")]})

    outcome = scraper.scrape_page(MARKTPLAATS_URL)

    assert outcome.status == SCRAPE_FAILED
    assert client.calls[-1][1].level == 3
    assert outcome.profile_level == 3
    assert outcome.diagnostics["profile_level"] == 3
    assert outcome.diagnostics["retry_count"] == 2


def test_failed_outcome_after_block_keeps_page_diagnostics():
    scraper, _, _ = build_scraper(
        {MARKTPLAATS_URL: [BLOCKED_PAGE, FetchError("timeout"), FetchError("timeout")]}
    )

    outcome = scraper.scrape_page(MARKTPLAATS_URL)

    assert outcome.status == SCRAPE_FAILED
    assert outcome.diagnostics["detected_blocked"] is True
    assert outcome.diagnostics["profile_level"] == 3
    assert outcome.diagnostics["retry_count"] == 2


def test_retry_policy_is_configurable():
    scraper, client, sleeps = build_scraper(
        {LEBONCOIN_URL: [FetchError("timeout"), "", FetchError("timeout")]},
        policy=RetryPolicy(max_retries=1, delays=(0.5,)),
    )

    outcome = scraper.scrape_page(LEBONCOIN_URL)

    assert outcome.status == SCRAPE_FAILED
    assert len(client.calls) == 2
    assert sleeps == [0.5]
    assert "Empty page" in outcome.reason


def test_fetch_error_then_success():
    page = marktplaats_page(7)
    scraper, client, _ = build_scraper({MARKTPLAATS_URL: [FetchError("reset"), page]})

    outcome = scraper.scrape_page(MARKTPLAATS_URL)

    assert outcome.ok
    assert outcome.retry_count == 1
    assert len(client.calls) == 2


def test_full_intensity_follows_pagination():
    page_two_url = build_paginated_url(MARKTPLAATS_URL, 2)
    scraper, client, _ = build_scraper(
        {
            MARKTPLAATS_URL: [marktplaats_page(1, 2, extra='<a href="?query=yaris&page=2">2</a>')],
            page_two_url: [marktplaats_page(2, 3)],
        }
    )

    outcome = scraper.search(MARKTPLAATS_URL, "full")

    assert outcome.ok
    assert [listing.listing_url.rsplit("/", 1)[-1] for listing in outcome.listings] == [
        "m1",
        "m2",
        "m3",
    ]
    assert outcome.pages == 2
    assert outcome.total_pages == 2
    assert [url for url, _ in client.calls] == [MARKTPLAATS_URL, page_two_url]
    assert outcome.page_log == (
        ScrapedPage(1, MARKTPLAATS_URL, 2, 2),
        ScrapedPage(2, page_two_url, 2, 1),
    )


def test_full_intensity_stops_when_page_repeats():
    page_two_url = build_paginated_url(MARKTPLAATS_URL, 2)
    scraper, client, _ = build_scraper(
        {MARKTPLAATS_URL: [marktplaats_page(1)], page_two_url: [marktplaats_page(1)]},
        max_pages=5,
    )

    outcome = scraper.search(MARKTPLAATS_URL, "full")

    assert len(outcome.listings) == 1
    assert outcome.pages == 1
    assert len(client.calls) == 2
    assert [page.new_unique_count for page in outcome.page_log] == [1, 0]


def test_fast_intensity_reads_first_page_only():
    scraper, client, _ = build_scraper(
        {MARKTPLAATS_URL: [marktplaats_page(1, extra='<a href="?page=4">4</a>')]}
    )

    outcome = scraper.search(MARKTPLAATS_URL, "fast")

    assert outcome.pages == 1
    assert len(client.calls) == 1
    assert outcome.page_log == (ScrapedPage(1, MARKTPLAATS_URL, 1, 1),)


def test_fetch_profile_rejects_millisecond_waits():
    with pytest.raises(ValueError):
        FetchProfile(level=3, wait_seconds=2000)
    with pytest.raises(ValueError):
        FetchProfile(level=3, wait_seconds=0)


def test_fetch_profile_builds_provider_request():
    profile = build_profile(MARKTPLAATS, 3)
    assert profile.to_request("https://www.marktplaats.nl/l/") == {
        "url": "https://www.marktplaats.nl/l/",
        "browserHtml": True,
        "geolocation": "NL",
        "javascript": True,
        "actions": [{"action": "waitForTimeout", "timeout": 2.0}],
    }
    assert build_profile(LEBONCOIN, 3) == FetchProfile(level=1)
    assert build_profile(BILBASEN, 2).to_request("u") == {"url": "u", "browserHtml": True}


def test_block_detection_ignores_script_content():
    html = '<html><script>window.recaptchaSiteKey = "x";</script><body>Toyota Yaris</body></html>'
    assert detect_blocked_content(html, has_listings=True).is_blocked is False


def test_block_detection_spots_website_ban_in_markup():
    html = '<html><body><img src="/download/website-ban.png"></body></html>'
    detection = detect_blocked_content(html, has_listings=False)
    assert detection.is_blocked is True
    assert detection.matched_keyword == "/download/website-ban"


def test_block_detection_flags_small_suspicious_pages_without_listings():
    html = "<html><body><p>Security of your payments</p></body></html>"
    assert detect_blocked_content(html, has_listings=False).is_blocked is True
    assert detect_blocked_content(html, has_listings=True).is_blocked is False
    padded = html.replace("</body>", "<p>" + "x" * 60000 + "</p></body>")
    assert detect_blocked_content(padded, has_listings=False).is_blocked is False
    assert detect_blocked_content("", has_listings=False).is_blocked is False


def test_extract_diagnostics_strips_script_bodies():
    html = "<script>var state = {};</script><p>Toyota</p>"
    diagnostics = extract_diagnostics(html, LEBONCOIN, strategy="next_data", retry_count=1)

    assert diagnostics["html_snippet"] == "<script>…</script><p>Toyota</p>"
    assert diagnostics["html_length"] == len(html)
    assert diagnostics["has_next_data"] is False
    assert diagnostics["strategy"] == "next_data"
    assert diagnostics["retry_count"] == 1
    assert diagnostics["detected_blocked"] is False


class DummyResponse:
    def __init__(self, status_code: int = 200, payload: Optional[dict] = None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class DummySession:
    def __init__(self, response=None, error=None):
        self.headers = {}
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def test_zyte_client_posts_profile_and_returns_html():
    session = DummySession(DummyResponse(payload={"browserHtml": "<html>ok</html>"}))
    client = ZyteClient("secret", endpoint="https://zyte.test/extract", timeout=5, session=session)

    response = client.fetch("https://www.leboncoin.fr/recherche", FetchProfile(level=1))

    assert response == FetchResponse(html="<html>ok</html>", status_code=200)
    url, kwargs = session.posts[0]
    assert url == "https://zyte.test/extract"
    assert kwargs["json"] == {"url": "https://www.leboncoin.fr/recherche", "browserHtml": True}
    assert kwargs["auth"] == ("secret", "")
    assert kwargs["timeout"] == 5
    assert session.headers["Accept"] == "application/json"


@pytest.mark.parametrize(
    "session",
    [
        DummySession(DummyResponse(status_code=503, payload={})),
        DummySession(DummyResponse(payload=None)),
        DummySession(error=requests.ConnectionError("connection refused")),
    ],
)
def test_zyte_client_wraps_failures(session):
    client = ZyteClient("secret", session=session)
    with pytest.raises(FetchError):
        client.fetch("https://www.leboncoin.fr/recherche", FetchProfile())


def test_zyte_client_keeps_http_status():
    session = DummySession(DummyResponse(status_code=429, payload={}))
    client = ZyteClient("secret", session=session)
    with pytest.raises(FetchError) as excinfo:
        client.fetch("https://www.leboncoin.fr/recherche", FetchProfile())
    assert excinfo.value.status_code == 429


def test_zyte_client_requires_api_key():
    with pytest.raises(ValueError):
        ZyteClient("")
