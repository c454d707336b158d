"""
Web data providers: Google PageSpeed Insights and an HTML site inspector.
"""

import json
from typing import Dict, List, Literal, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field

from prism.core.config import ProviderConfig
from prism.core.models import AnalysisRequest, MetricValue, ProviderDescriptor
from prism.core.validation import WEB_DOMAIN
from prism.providers.base import HttpProvider


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# PageSpeed


class LighthouseCategory(_Wire):
    score: Optional[float] = None


class LighthouseAudit(_Wire):
    numeric_value: Optional[float] = Field(default=None, alias="numericValue")


class LighthouseResult(_Wire):
    categories: Dict[str, LighthouseCategory] = Field(default_factory=dict)
    audits: Dict[str, LighthouseAudit] = Field(default_factory=dict)


class PageSpeedResponse(_Wire):
    kind: Literal["pagespeed.run"] = "pagespeed.run"
    lighthouse_result: LighthouseResult = Field(alias="lighthouseResult")


PAGESPEED_CATEGORIES = {
    "performance": ("performance",),
    "seo": ("seo", "accessibility", "best-practices"),
}

PAGESPEED_AUDITS = {
    "largest-contentful-paint": "largest_contentful_paint_ms",
    "first-contentful-paint": "first_contentful_paint_ms",
    "cumulative-layout-shift": "cumulative_layout_shift",
    "total-blocking-time": "total_blocking_time_ms",
    "speed-index": "speed_index_ms",
}


class PageSpeedProvider(HttpProvider):
    """
    Google PageSpeed Insights (Lighthouse lab data).

    Works without an API key at a lower quota; the key is sent when configured.
    """

    API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

    def __init__(self, config: ProviderConfig, client=None, strategy: str = "mobile", **kwargs):
        descriptor = ProviderDescriptor(
            name="pagespeed",
            capabilities=frozenset({"performance", "seo"}),
            domains=frozenset({WEB_DOMAIN}),
            has_credentials=True,
            reliability={"performance": 3, "seo": 2},
            **config.quota_for("pagespeed"),
        )
        super().__init__(descriptor, config, client, **kwargs)
        self.strategy = strategy

    async def _fetch(self, request: AnalysisRequest, capability: str) -> Dict[str, MetricValue]:
        params = [("url", request.subject), ("strategy", self.strategy)]
        for category in PAGESPEED_CATEGORIES[capability]:
            params.append(("category", category.upper().replace("-", "_")))
        if self.config.pagespeed_api_key:
            params.append(("key", self.config.pagespeed_api_key))

        data = await self.get_json(self.API_URL, params=params)
        return self.metrics(PageSpeedResponse.model_validate(data), capability)

    @staticmethod
    def metrics(response: PageSpeedResponse, capability: str) -> Dict[str, MetricValue]:
        lighthouse = response.lighthouse_result
        metrics: Dict[str, MetricValue] = {}
        for category in PAGESPEED_CATEGORIES[capability]:
            entry = lighthouse.categories.get(category)
            if entry is not None and entry.score is not None:
                metrics[f"{category.replace('-', '_')}_score"] = round(entry.score * 100, 1)

        if capability == "performance":
            for audit_id, metric in PAGESPEED_AUDITS.items():
                audit = lighthouse.audits.get(audit_id)
                if audit is not None and audit.numeric_value is not None:
                    metrics[metric] = round(audit.numeric_value, 3)
        return metrics


# Site inspector


class PageSnapshot(BaseModel):
    """Facts extracted from one HTML page."""

    kind: Literal["site_inspector.page"] = "site_inspector.page"
    url: str
    title: str = ""
    meta_description: str = ""
    has_canonical: bool = False
    has_viewport: bool = False
    has_open_graph: bool = False
    has_structured_data: bool = False
    word_count: int = 0
    h1_count: int = 0
    heading_count: int = 0
    image_count: int = 0
    images_missing_alt: int = 0
    internal_links: List[str] = Field(default_factory=list)
    external_links: List[str] = Field(default_factory=list)
    nofollow_link_count: int = 0


def _is_open_graph(value) -> bool:
    return bool(value) and value.startswith("og:")


def parse_page(url: str, html: str) -> PageSnapshot:
    """Extract metadata, content and link facts from an HTML document."""
    soup = BeautifulSoup(html, "html.parser")
    host = urlsplit(url).netloc.lower()

    title = soup.title.get_text(strip=True) if soup.title else ""
    description_tag = soup.find("meta", attrs={"name": "description"})
    description = (description_tag.get("content") or "").strip() if description_tag else ""

    structured = False
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            json.loads(script.string or "")
            structured = True
            break
        except ValueError:
            continue

    images = soup.find_all("img")
    internal, external, nofollow = [], [], 0
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
            continue
        target = urljoin(url, href)
        if urlsplit(target).netloc.lower() == host:
            internal.append(target)
        else:
            external.append(target)
        if "nofollow" in (anchor.get("rel") or []):
            nofollow += 1

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    body = soup.body or soup
    words = body.get_text(" ", strip=True).split()

    return PageSnapshot(
        url=url,
        title=title,
        meta_description=description,
        has_canonical=soup.find("link", rel="canonical") is not None,
        has_viewport=soup.find("meta", attrs={"name": "viewport"}) is not None,
        has_open_graph=soup.find("meta", attrs={"property": _is_open_graph}) is not None,
        has_structured_data=structured,
        word_count=len(words),
        h1_count=len(soup.find_all("h1")),
        heading_count=len(soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"])),
        image_count=len(images),
        images_missing_alt=sum(1 for img in images if not (img.get("alt") or "").strip()),
        internal_links=sorted(set(internal)),
        external_links=sorted(set(external)),
        nofollow_link_count=nofollow,
    )


class SiteInspectorProvider(HttpProvider):
    """Fetches the page itself and inspects its markup."""

    def __init__(self, config: ProviderConfig, client=None, **kwargs):
        descriptor = ProviderDescriptor(
            name="site_inspector",
            capabilities=frozenset({"metadata", "content", "links"}),
            domains=frozenset({WEB_DOMAIN}),
            has_credentials=config.site_inspector_enabled,
            reliability={"metadata": 2, "content": 2, "links": 2},
            **config.quota_for("site_inspector"),
        )
        super().__init__(descriptor, config, client, **kwargs)

    async def _fetch(self, request: AnalysisRequest, capability: str) -> Dict[str, MetricValue]:
        response = await self.request("GET", request.subject, headers={"accept": "text/html"})
        snapshot = parse_page(str(response.url), response.text)
        return self.metrics(snapshot, capability)

    @staticmethod
    def metrics(page: PageSnapshot, capability: str) -> Dict[str, MetricValue]:
        if capability == "metadata":
            return {
                "title_length": len(page.title),
                "meta_description_length": len(page.meta_description),
                "has_canonical": page.has_canonical,
                "has_viewport": page.has_viewport,
                "has_open_graph": page.has_open_graph,
                "has_structured_data": page.has_structured_data,
            }
        if capability == "content":
            return {
                "word_count": page.word_count,
                "h1_count": page.h1_count,
                "heading_count": page.heading_count,
                "image_count": page.image_count,
                "images_missing_alt": page.images_missing_alt,
            }
        return {
            "internal_link_count": len(page.internal_links),
            "external_link_count": len(page.external_links),
            "nofollow_link_count": page.nofollow_link_count,
        }
