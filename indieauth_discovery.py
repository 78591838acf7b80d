"""
indieauth_discovery.py — authorization endpoint discovery for IndieAuth.

Fetches the user's identity URL ("me") and looks for the
``authorization_endpoint`` relation. Relations advertised in the HTTP
``Link`` header take precedence over those found in the HTML document,
whatever their position in the page.

HTML relations are read from ``<link>``, ``<a>`` and ``<area>`` elements
(the set a microformats2 rel parser reports), in document order, and
resolved against ``<base href>`` when the page declares one.

Discovery runs once, when the auth manager is built. It is synchronous.
"""

import logging
import re
import urllib.parse

import httpx
from bs4 import BeautifulSoup

logger = logging.getLogger("indieauth-discovery")

USER_AGENT = "IndieAuth client (+https://indieauth.net)"
AUTHORIZATION_ENDPOINT_REL = "authorization_endpoint"
DISCOVERY_TIMEOUT = 10.0  # seconds

_HTML_TYPES = ("text/html", "application/xhtml+xml")
_LINK_SPLIT = re.compile(r",\s*(?=<)")


class DiscoveryError(Exception):
    """The identity URL is unreachable or advertises no authorization endpoint."""


# ---------------------------------------------------------------------------
# Relation parsing
# ---------------------------------------------------------------------------

def _add_rel(rels: dict[str, list[str]], rel_values, href: str) -> None:
    for rel in rel_values:
        rels.setdefault(rel.lower(), []).append(href)


def _header_links(response: httpx.Response) -> list[tuple[str, list[str]]]:
    """(url, rels) for every Link header entry, in header order."""
    links = []
    for value in response.headers.get_list("link"):
        for entry in _LINK_SPLIT.split(value.strip()):
            target, _, params = entry.partition(";")
            url = target.strip().strip("<>").strip()
            if not url:
                continue
            rels: list[str] = []
            for param in params.split(";"):
                key, _, val = param.partition("=")
                if key.strip().lower() == "rel":
                    rels.extend(val.strip().strip("\"'").split())
            links.append((url, rels))
    return links


def _header_rels(response: httpx.Response) -> dict[str, list[str]]:
    rels: dict[str, list[str]] = {}
    base_url = str(response.url)
    for url, rel_values in _header_links(response):
        _add_rel(rels, rel_values, urllib.parse.urljoin(base_url, url))
    return rels


def _is_html(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type")
    if not content_type:
        return True
    return content_type.split(";")[0].strip().lower() in _HTML_TYPES


def _html_rels(html: str, base_url: str) -> dict[str, list[str]]:
    rels: dict[str, list[str]] = {}
    soup = BeautifulSoup(html, "html.parser")

    base = soup.find("base", href=True)
    if base is not None:
        base_url = urllib.parse.urljoin(base_url, base["href"].strip())

    for element in soup.find_all(["link", "a", "area"], href=True):
        rel_values = element.get("rel")
        if not rel_values:
            continue
        if isinstance(rel_values, str):
            rel_values = rel_values.split()
        href = urllib.parse.urljoin(base_url, element["href"].strip())
        _add_rel(rels, rel_values, href)
    return rels


def parse_rels(response: httpx.Response) -> dict[str, list[str]]:
    """Merge the relations of a fetched resource, header relations first.

    Every value is an absolute URL. For each rel, URLs from the ``Link``
    header come before URLs found in the HTML body.
    """
    rels = _header_rels(response)
    if _is_html(response):
        for rel, hrefs in _html_rels(response.text, str(response.url)).items():
            rels.setdefault(rel, []).extend(hrefs)
    return rels


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def _fetch(me: str, client: httpx.Client) -> httpx.Response:
    try:
        response = client.get(me, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise DiscoveryError(
            f"fetching {me} failed with status {e.response.status_code}"
        ) from e
    except httpx.HTTPError as e:
        raise DiscoveryError(f"fetching {me} failed: {e}") from e
    return response


def discover_authorization_endpoint(
    me: str,
    client: httpx.Client | None = None,
    timeout: float = DISCOVERY_TIMEOUT,
) -> str:
    """Resolve the authorization endpoint advertised by the identity URL ``me``.

    Args:
        me: The identity URL to fetch.
        client: Optional pre-built client. It should follow redirects so the
            final URL is used to resolve relative links.
        timeout: Request timeout in seconds, used only when ``client`` is None.

    Raises:
        DiscoveryError: if the fetch fails or no relation is advertised.
    """
    if client is None:
        with httpx.Client(timeout=timeout, follow_redirects=True) as own_client:
            response = _fetch(me, own_client)
    else:
        response = _fetch(me, client)

    endpoints = parse_rels(response).get(AUTHORIZATION_ENDPOINT_REL, [])
    if not endpoints:
        raise DiscoveryError(f"no {AUTHORIZATION_ENDPOINT_REL} advertised by {me}")

    logger.info("discovered %s for %s: %s", AUTHORIZATION_ENDPOINT_REL, me, endpoints[0])
    return endpoints[0]
