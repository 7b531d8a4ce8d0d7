"""DOU.ua vacancy scraper.

DOU (jobs.dou.ua) lists vacancies per category as server-rendered HTML:
  https://jobs.dou.ua/vacancies/?category=.NET

Page structure:
  - Each vacancy is an <li class="l-vacancy">
    - <a class="vt"> holds the title and the link to /companies/{slug}/vacancies/{id}/
    - <a class="company"> holds the company name
    - <span class="salary">, <span class="cities"> when present
    - <div class="sh-info"> is a short description snippet
    - <div class="date"> is a Ukrainian date ("12 березня", "сьогодні", "вчора")
  - The first page shows ~40 vacancies. The rest come from the
    "Більше вакансій" button, which POSTs to
    /vacancies/xhr-load/?category=.NET with form fields
    csrfmiddlewaretoken and count (vacancies already shown). The reply is
    JSON: {"html": "<li ...>...", "last": bool, "num": int}
  - The full description lives on the vacancy page in div.b-typo.vacancy-section

The complete listing is always read, because every listed url counts as
live. Anything that would leave the live set incomplete (an empty page
while vacancies are stored, a missing CSRF token, a listing longer than
max_load_more) raises SourceError instead. Detail pages are fetched only
for urls the store does not know yet.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from datetime import date, timedelta
from typing import Optional
from urllib.parse import urljoin, urlparse, parse_qs, urlencode

import requests
from bs4 import BeautifulSoup

from src.config import ScraperConfig, PipelineConfig
from src.errors import SourceError
from src.models import Posting, canonical_url
from src.scrapers.base import BaseScraper, ScanResult

logger = logging.getLogger(__name__)

BASE_URL = "https://jobs.dou.ua"

UKRAINIAN_MONTHS = {
    "січня": 1, "лютого": 2, "березня": 3, "квітня": 4,
    "травня": 5, "червня": 6, "липня": 7, "серпня": 8,
    "вересня": 9, "жовтня": 10, "листопада": 11, "грудня": 12,
}

REMOTE_KEYWORDS = ("remote", "віддалено")

_CSRF_IN_PAGE = re.compile(r"CSRF_TOKEN\s*=\s*[\"']([^\"']+)[\"']")

# Detail page containers, most specific first
_DETAIL_SELECTORS = ("div.b-typo.vacancy-section", "div.l-vacancy", "main", "article")


def parse_dou_date(text: str, today: Optional[date] = None) -> Optional[date]:
    """Parse a DOU listing date.

    DOU omits the year, so a date that would land in the future is
    assumed to be from last year.
    """
    if not text:
        return None
    today = today or date.today()
    text = text.strip().lower()

    if "сьогодні" in text:
        return today
    if "вчора" in text:
        return today - timedelta(days=1)

    parts = text.split()
    if len(parts) < 2 or not parts[0].isdigit():
        logger.debug("Could not parse DOU date: %r", text)
        return None

    month = UKRAINIAN_MONTHS.get(parts[1])
    if month is None:
        logger.debug("Unknown month in DOU date: %r", text)
        return None

    year = today.year
    if len(parts) >= 3 and parts[2].isdigit() and len(parts[2]) == 4:
        year = int(parts[2])

    try:
        parsed = date(year, month, int(parts[0]))
    except ValueError:
        return None

    if parsed > today:
        try:
            parsed = parsed.replace(year=parsed.year - 1)
        except ValueError:
            # 29 February in a non-leap year
            parsed = parsed.replace(year=parsed.year - 1, day=28)
    return parsed


def is_remote(location: str, description: str) -> bool:
    text = f"{location} {description}".lower()
    return any(kw in text for kw in REMOTE_KEYWORDS)


class DouScraper(BaseScraper):
    """Scrapes one DOU.ua vacancy category, including every "load more" page."""

    def __init__(self, source_config: ScraperConfig, pipeline_config: PipelineConfig, **kwargs):
        super().__init__(source_config, pipeline_config, **kwargs)
        self.listing_url = source_config.url
        self.max_load_more = int(source_config.params.get("max_load_more", 20))
        self.fetch_details = bool(source_config.params.get("fetch_details", True))
        self.xhr_url = self._build_xhr_url(self.listing_url)

    @staticmethod
    def _build_xhr_url(listing_url: str) -> str:
        parsed = urlparse(listing_url)
        path = parsed.path if parsed.path.endswith("/") else parsed.path + "/"
        query = urlencode(parse_qs(parsed.query), doseq=True)
        xhr = f"{parsed.scheme or 'https'}://{parsed.netloc}{path}xhr-load/"
        return f"{xhr}?{query}" if query else xhr

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def scan(self, known_urls: set[str], limit: Optional[int] = None) -> ScanResult:
        """Read the whole listing, then detail-fetch only unknown vacancies.

        ``limit`` caps how many unknown vacancies are returned; the live
        url set is complete either way.
        """
        logger.info("[%s] Scanning %s", self.name, self.listing_url)

        listed = self._scrape_listing()
        if not listed and known_urls:
            raise SourceError(
                f"DOU listing {self.listing_url} contained no vacancies while "
                f"{len(known_urls)} are stored; the page layout may have changed"
            )
        live_urls = {p.url for p in listed}

        unknown: list[Posting] = []
        taken: set[str] = set()
        for p in listed:
            if p.url in known_urls or p.url in taken:
                continue
            taken.add(p.url)
            unknown.append(p)
        if limit is not None:
            unknown = unknown[:limit]

        postings = []
        for index, posting in enumerate(unknown, start=1):
            if self.fetch_details:
                logger.debug(
                    "[%s] Fetching details %d/%d: %s", self.name, index, len(unknown), posting.url
                )
                posting = self._with_details(posting)
            postings.append(posting)

        logger.info(
            "[%s] Listing has %d vacancies, %d not seen before",
            self.name, len(live_urls), len(postings),
        )
        return ScanResult(postings=postings, live_urls=live_urls)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def _scrape_listing(self) -> list[Posting]:
        try:
            resp = self._get(self.listing_url)
        except requests.RequestException as exc:
            raise SourceError(f"Could not load DOU listing {self.listing_url}: {exc}") from exc

        postings = self.parse_listing(resp.text)
        if not postings:
            logger.warning("[%s] Listing page contained no vacancies", self.name)
            return []

        token = self.session.cookies.get("csrftoken")
        if not token:
            match = _CSRF_IN_PAGE.search(resp.text)
            token = match.group(1) if match else None
        if not token:
            raise SourceError(
                f"No CSRF token on DOU listing {self.listing_url}, cannot load the full listing"
            )

        seen = {p.url for p in postings}
        count = len(postings)

        for page in range(1, self.max_load_more + 1):
            batch, last, num = self._load_more(token, count)
            new_items = [p for p in batch if p.url not in seen]
            for p in new_items:
                seen.add(p.url)
            postings.extend(new_items)
            logger.debug("[%s] Load more #%d: %d vacancies", self.name, page, len(new_items))

            count += num or len(batch)
            if last or not batch:
                break
        else:
            raise SourceError(
                f"DOU listing still had more vacancies after {self.max_load_more} "
                f"load-more requests; raise source.params.max_load_more"
            )

        return postings

    def _load_more(self, token: str, count: int) -> tuple[list[Posting], bool, int]:
        """POST the load-more request. A failure here aborts the scan."""
        try:
            resp = self._post(
                self.xhr_url,
                data={"csrfmiddlewaretoken": token, "count": count},
                headers={"Referer": self.listing_url, "X-Requested-With": "XMLHttpRequest"},
            )
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise SourceError(
                f"Could not load more DOU vacancies after {count}: {exc}"
            ) from exc

        if not isinstance(data, dict):
            raise SourceError("Unexpected load-more response from DOU")

        batch = self.parse_listing(data.get("html") or "")
        return batch, bool(data.get("last")), int(data.get("num") or 0)

    def parse_listing(self, html: str) -> list[Posting]:
        """Parse vacancy cards from a listing page or a load-more fragment."""
        soup = BeautifulSoup(html, "html.parser")
        postings: list[Posting] = []

        for card in soup.select("li.l-vacancy"):
            try:
                posting = self._parse_card(card)
            except (AttributeError, ValueError) as exc:
                logger.warning("[%s] Error parsing vacancy card: %s", self.name, exc)
                continue
            if posting is not None:
                postings.append(posting)

        return postings

    def _parse_card(self, card) -> Optional[Posting]:
        link = card.select_one("a.vt") or card.select_one("h2 a")
        if link is None or not link.get("href"):
            return None

        url = canonical_url(urljoin(BASE_URL, link["href"]))
        title = link.get_text(strip=True)

        def text_of(selector: str) -> str:
            node = card.select_one(selector)
            return node.get_text(" ", strip=True) if node else ""

        company = text_of("a.company")
        description = text_of("div.sh-info") or text_of("div.description")
        salary = text_of("span.salary")
        location = text_of("span.cities")
        published = parse_dou_date(text_of("div.date"))

        return Posting(
            title=title,
            company=company,
            url=url,
            description=description,
            published_date=published,
            salary=salary,
            is_remote=is_remote(location, description),
            location=location,
        )

    # ------------------------------------------------------------------
    # Detail pages
    # ------------------------------------------------------------------

    def _with_details(self, posting: Posting) -> Posting:
        """Replace the listing snippet with the full description when available."""
        try:
            resp = self._get(posting.url)
        except requests.RequestException as exc:
            logger.warning(
                "[%s] Could not fetch details for %s, keeping snippet: %s",
                self.name, posting.url, exc,
            )
            return posting

        description = self.parse_detail(resp.text)
        if not description:
            return posting
        return dataclasses.replace(
            posting,
            description=description,
            is_remote=posting.is_remote or is_remote(posting.location, description),
        )

    @staticmethod
    def parse_detail(html: str) -> str:
        soup = BeautifulSoup(html, "html.parser")
        for selector in _DETAIL_SELECTORS:
            node = soup.select_one(selector)
            if node is None:
                continue
            for tag in node.find_all(["script", "style", "nav", "footer", "aside"]):
                tag.decompose()
            text = node.get_text("\n", strip=True)
            if text:
                return re.sub(r"\n{3,}", "\n\n", text)
        return ""
