"""Tests for the DOU scraper using mocked HTTP responses."""

from datetime import date
from urllib.parse import parse_qs

import pytest
import responses

from src.config import PipelineConfig, ScraperConfig
from src.errors import SourceError
from src.scrapers.dou import DouScraper, is_remote, parse_dou_date

LISTING_URL = "https://jobs.dou.ua/vacancies/?category=.NET"
XHR_URL = "https://jobs.dou.ua/vacancies/xhr-load/?category=.NET"


def card(n, title=".NET Developer", company="Acme", date_text="12 березня",
         cities="Київ", snippet="ASP.NET Core, PostgreSQL"):
    return f"""
    <li class="l-vacancy">
      <div class="date">{date_text}</div>
      <div class="title">
        <a class="vt" href="https://jobs.dou.ua/companies/acme/vacancies/{n}/?from=list_hot">{title}</a>
        <strong>в <a class="company" href="https://jobs.dou.ua/companies/acme/">{company}</a></strong>
        <span class="salary">$3000</span>
        <span class="cities">{cities}</span>
      </div>
      <div class="sh-info">{snippet}</div>
    </li>
    """


def listing_page(*cards, token="tok123"):
    script = f'<script>window.CSRF_TOKEN = "{token}";</script>' if token else ""
    return f"""
    <html><head>{script}</head><body>
    <div id="vacancyListId"><ul>{''.join(cards)}</ul></div>
    </body></html>
    """


def detail_page(text):
    return f"""
    <html><body>
      <nav>Menu</nav>
      <div class="l-vacancy">
        <div class="b-typo vacancy-section">
          <p>{text}</p>
          <script>track();</script>
        </div>
      </div>
      <footer>DOU</footer>
    </body></html>
    """


def vacancy_url(n):
    return f"https://jobs.dou.ua/companies/acme/vacancies/{n}/"


@pytest.fixture
def scraper_factory():
    def build(**params):
        params.setdefault("max_load_more", 5)
        source = ScraperConfig(name="dou-dotnet", scraper_type="dou", url=LISTING_URL, params=params)
        return DouScraper(source, PipelineConfig(request_delay_seconds=0), sleep=lambda s: None)
    return build


# --- Date parsing ---

class TestParseDouDate:
    TODAY = date(2026, 3, 15)

    @pytest.mark.parametrize("text,expected", [
        ("12 березня", date(2026, 3, 12)),
        ("1 січня", date(2026, 1, 1)),
        ("20 грудня", date(2025, 12, 20)),  # future date belongs to last year
        ("5 березня 2024", date(2024, 3, 5)),
        ("сьогодні", date(2026, 3, 15)),
        ("вчора", date(2026, 3, 14)),
    ])
    def test_known_formats(self, text, expected):
        assert parse_dou_date(text, today=self.TODAY) == expected

    @pytest.mark.parametrize("text", ["", "березня", "12 march", "31 лютого"])
    def test_unparseable(self, text):
        assert parse_dou_date(text, today=self.TODAY) is None


def test_is_remote():
    assert is_remote("Київ, віддалено", "")
    assert is_remote("", "Fully remote team")
    assert not is_remote("Львів", "Office only")


# --- Listing parsing ---

def test_parse_listing_extracts_fields(scraper_factory):
    scraper = scraper_factory()
    postings = scraper.parse_listing(listing_page(card(111, cities="Київ, віддалено")))

    assert len(postings) == 1
    p = postings[0]
    assert p.title == ".NET Developer"
    assert p.company == "Acme"
    assert p.url == vacancy_url(111)  # tracking param stripped
    assert p.salary == "$3000"
    assert p.location == "Київ, віддалено"
    assert p.is_remote is True
    assert p.description == "ASP.NET Core, PostgreSQL"
    assert p.published_date is not None


def test_parse_listing_skips_cards_without_link(scraper_factory):
    scraper = scraper_factory()
    html = '<ul><li class="l-vacancy"><div class="date">сьогодні</div></li></ul>' + card(222)
    postings = scraper.parse_listing(html)
    assert [p.url for p in postings] == [vacancy_url(222)]


def test_parse_detail_strips_page_chrome():
    text = DouScraper.parse_detail(detail_page("Build APIs with .NET 8"))
    assert text == "Build APIs with .NET 8"
    assert DouScraper.parse_detail("<html><body></body></html>") == ""


def test_xhr_url_keeps_category(scraper_factory):
    assert scraper_factory().xhr_url == XHR_URL


# --- Full scan ---

@responses.activate
def test_scan_reads_load_more_and_fetches_unknown_details(scraper_factory):
    responses.add(responses.GET, LISTING_URL, body=listing_page(card(1), card(2)), status=200)
    responses.add(
        responses.POST,
        XHR_URL,
        json={"html": card(2) + card(3), "last": True, "num": 2},
        status=200,
    )
    responses.add(responses.GET, vacancy_url(2), body=detail_page("Full text two"), status=200)
    responses.add(responses.GET, vacancy_url(3), body=detail_page("Full text three"), status=200)

    scraper = scraper_factory()
    result = scraper.scan({vacancy_url(1)})

    assert result.live_urls == {vacancy_url(1), vacancy_url(2), vacancy_url(3)}
    assert [p.url for p in result.postings] == [vacancy_url(2), vacancy_url(3)]
    assert [p.description for p in result.postings] == ["Full text two", "Full text three"]

    fetched = [c.request.url for c in responses.calls if c.request.method == "GET"]
    assert vacancy_url(1) not in fetched  # known vacancy never detail-fetched

    post = next(c.request for c in responses.calls if c.request.method == "POST")
    form = parse_qs(post.body)
    assert form["csrfmiddlewaretoken"] == ["tok123"]
    assert form["count"] == ["2"]


@responses.activate
def test_scan_limit_caps_new_postings_only(scraper_factory):
    responses.add(responses.GET, LISTING_URL, body=listing_page(card(1), card(2), card(3)))
    responses.add(responses.POST, XHR_URL, json={"html": "", "last": True, "num": 0})

    scraper = scraper_factory(fetch_details=False)
    result = scraper.scan(set(), limit=1)

    assert len(result.live_urls) == 3
    assert [p.url for p in result.postings] == [vacancy_url(1)]


@responses.activate
def test_detail_failure_keeps_snippet(scraper_factory):
    responses.add(responses.GET, LISTING_URL, body=listing_page(card(1)))
    responses.add(responses.POST, XHR_URL, json={"html": "", "last": True, "num": 0})
    responses.add(responses.GET, vacancy_url(1), status=404)

    result = scraper_factory(max_attempts=1).scan(set())

    assert result.postings[0].description == "ASP.NET Core, PostgreSQL"


@responses.activate
def test_missing_token_raises_source_error(scraper_factory):
    responses.add(responses.GET, LISTING_URL, body=listing_page(card(1), token=None))

    with pytest.raises(SourceError, match="CSRF"):
        scraper_factory(fetch_details=False).scan(set())


@responses.activate
def test_csrf_cookie_is_used_for_load_more(scraper_factory):
    responses.add(
        responses.GET,
        LISTING_URL,
        body=listing_page(card(1), token=None),
        headers={"Set-Cookie": "csrftoken=cookietok; Path=/"},
    )
    responses.add(responses.POST, XHR_URL, json={"html": "", "last": True, "num": 0})

    result = scraper_factory(fetch_details=False).scan(set())

    assert result.live_urls == {vacancy_url(1)}
    post = next(c.request for c in responses.calls if c.request.method == "POST")
    assert parse_qs(post.body)["csrfmiddlewaretoken"] == ["cookietok"]


@responses.activate
def test_empty_listing_with_stored_vacancies_raises(scraper_factory):
    responses.add(
        responses.GET, LISTING_URL, body="<html><body>Checking your browser</body></html>"
    )

    with pytest.raises(SourceError, match="no vacancies"):
        scraper_factory().scan({vacancy_url(1), vacancy_url(2)})


@responses.activate
def test_empty_listing_with_empty_store_is_allowed(scraper_factory):
    responses.add(responses.GET, LISTING_URL, body=listing_page())

    result = scraper_factory().scan(set())

    assert result.postings == []
    assert result.live_urls == set()


@responses.activate
def test_load_more_budget_exhausted_raises(scraper_factory):
    responses.add(responses.GET, LISTING_URL, body=listing_page(card(1)))
    responses.add(responses.POST, XHR_URL, json={"html": card(2), "last": False, "num": 1})

    with pytest.raises(SourceError, match="max_load_more"):
        scraper_factory(max_load_more=1, fetch_details=False).scan({vacancy_url(1)})

    assert len([c for c in responses.calls if c.request.method == "POST"]) == 1


@responses.activate
def test_listing_failure_raises_source_error(scraper_factory):
    responses.add(responses.GET, LISTING_URL, status=503)

    with pytest.raises(SourceError):
        scraper_factory().scan(set())

    assert len(responses.calls) == 3  # default max_attempts


@responses.activate
def test_load_more_failure_raises_source_error(scraper_factory):
    responses.add(responses.GET, LISTING_URL, body=listing_page(card(1)))
    responses.add(responses.POST, XHR_URL, body="not json", status=200)

    with pytest.raises(SourceError):
        scraper_factory(fetch_details=False).scan(set())


@responses.activate
def test_retry_recovers_from_transient_failure(scraper_factory):
    responses.add(responses.GET, LISTING_URL, status=502)
    responses.add(responses.GET, LISTING_URL, body=listing_page(card(1)))
    responses.add(responses.POST, XHR_URL, json={"html": "", "last": True, "num": 0})

    result = scraper_factory(fetch_details=False).scan(set())

    assert result.live_urls == {vacancy_url(1)}
