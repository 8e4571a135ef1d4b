"""
Resolution of inbound product URLs: shortlink redirects and product ID extraction.
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx

from affilink.events import event_broker, EventType


# Markers of shortened or app-redirect URLs that must be followed first
SHORTLINK_MARKERS = ("shp.ee", "/universal-link/")

# Ordered product ID patterns: the first match wins. URL shapes overlap, so the
# order is what makes extraction deterministic. The item ID is group 2.
IDENTIFIER_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("product_path", re.compile(r"/product/(\d+)/(\d+)")),
    ("item_slug", re.compile(r"-i\.(\d+)\.(\d+)")),
    ("bs_path", re.compile(r"/bs/(\d+)/(\d+)")),
)


@dataclass
class ResolvedUrl:
    """Result of resolving a product URL."""
    url: str
    item_id: Optional[str] = None

    @property
    def is_direct_link(self) -> bool:
        """No product ID means the scrape step is skipped."""
        return self.item_id is None


def is_shortlink(url: str) -> bool:
    """Check if the URL needs its redirects followed."""
    return any(marker in url for marker in SHORTLINK_MARKERS)


def strip_query(url: str) -> str:
    return url.split("?")[0]


def extract_item_id(url: str) -> Optional[str]:
    """Run the ordered identifier patterns against the URL without its query string."""
    clean_url = strip_query(url)
    for _name, pattern in IDENTIFIER_PATTERNS:
        match = pattern.search(clean_url)
        if match:
            return match.group(2)
    return None


class UrlResolver:
    """Follows shortlink redirects and extracts product IDs."""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def follow_redirects(self, url: str) -> str:
        """Return the final URL after redirects, or the input URL on failure."""
        try:
            response = await self._client.get(url, follow_redirects=True)
            final_url = str(response.url)
        except httpx.HTTPError as e:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.WARNING,
                    "resolve_redirect_failed",
                    url=url,
                    details={"message": f"Redirect resolution failed: {e}", "error": str(e)}
                )
            )
            return url

        await event_broker.publish(
            event_broker.create_event(
                EventType.STEP,
                "resolve_redirect",
                url=final_url,
                details={"message": f"Resolved shortlink to: {final_url}", "original_url": url}
            )
        )
        return final_url

    async def resolve(self, url: str) -> ResolvedUrl:
        """Resolve a URL into its final form and optional product ID."""
        final_url = url
        if is_shortlink(url):
            final_url = await self.follow_redirects(url)

        return ResolvedUrl(url=final_url, item_id=extract_item_id(final_url))
