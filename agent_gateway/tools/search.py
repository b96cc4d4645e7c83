"""internet_search 工具：通过 DuckDuckGo HTML 页面检索并抓取前几个结果页正文。"""

import json
import logging
from html.parser import HTMLParser
from typing import List, Optional
from urllib.parse import parse_qs, urlparse

import httpx

from agent_gateway.config.settings import settings
from agent_gateway.domain.models import ToolDefinition
from agent_gateway.infrastructure.logging.logger import log_event

SEARCH_URL = "https://html.duckduckgo.com/html/"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
MAX_RESULTS = 3
MAX_PAGE_CHARS = 4000

SEARCH_DEFINITION = ToolDefinition(
    name="internet_search",
    description="Search the internet for real-time information or specific topics.",
    parameters={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The search query to look up on the web.",
            }
        },
        "required": ["query"],
    },
)


class _ResultLinkParser(HTMLParser):
    """收集 a.result__a 的 href。"""

    def __init__(self):
        super().__init__()
        self.links: List[str] = []

    def handle_starttag(self, tag, attrs):
        if tag != "a":
            return
        attr_map = dict(attrs)
        classes = (attr_map.get("class") or "").split()
        if "result__a" in classes and attr_map.get("href"):
            self.links.append(attr_map["href"])


class _TextParser(HTMLParser):
    """提取页面可见文本，跳过 script/style 等。"""

    _SKIP = {"script", "style", "noscript", "head", "svg", "nav", "footer"}

    def __init__(self):
        super().__init__()
        self._depth = 0
        self.parts: List[str] = []

    def handle_starttag(self, tag, attrs):
        if tag in self._SKIP:
            self._depth += 1

    def handle_endtag(self, tag):
        if tag in self._SKIP and self._depth:
            self._depth -= 1

    def handle_data(self, data):
        if not self._depth:
            text = data.strip()
            if text:
                self.parts.append(text)


def resolve_result_url(href: str) -> Optional[str]:
    """还原 DuckDuckGo 的 /l/?uddg=<url> 跳转链接，站内链接返回 None。"""

    if "uddg=" in href:
        target = parse_qs(urlparse(href).query).get("uddg")
        if not target:
            return None
        href = target[0]
    if href.startswith("/") or "duckduckgo.com" in href:
        return None
    return href


def extract_text(html: str) -> str:
    parser = _TextParser()
    parser.feed(html)
    return " ".join(parser.parts)


class SearchTool:
    def __init__(self, timeout: Optional[float] = None):
        self._timeout = timeout or settings.http_timeout

    @property
    def definition(self) -> ToolDefinition:
        return SEARCH_DEFINITION

    async def call(self, arguments: str) -> str:
        try:
            args = json.loads(arguments or "{}")
            query = str(args["query"]).strip()
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            return f"Error parsing arguments: {e}"
        if not query:
            return "Error parsing arguments: empty query"

        log_event(logging.INFO, "Performing internet search", {"tool": "internet_search"}, query=query)
        async with httpx.AsyncClient(
            timeout=self._timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        ) as client:
            urls = await self._search(client, query)
            if not urls:
                return "No results found for that query."
            sections = [await self._scrape(client, url) for url in urls]
        return "\n\n---\n\n".join(sections)

    async def _search(self, client: httpx.AsyncClient, query: str) -> List[str]:
        try:
            resp = await client.get(SEARCH_URL, params={"q": query})
        except httpx.RequestError as e:
            log_event(logging.ERROR, "Search request failed", {"tool": "internet_search"}, error=str(e))
            return []
        parser = _ResultLinkParser()
        parser.feed(resp.text)
        urls: List[str] = []
        for href in parser.links:
            url = resolve_result_url(href)
            if url and url not in urls:
                urls.append(url)
            if len(urls) >= MAX_RESULTS:
                break
        return urls

    async def _scrape(self, client: httpx.AsyncClient, url: str) -> str:
        try:
            resp = await client.get(url)
        except httpx.RequestError as e:
            return f"Error fetching {url}: {e}"
        if resp.status_code >= 400:
            return f"Error fetching {url}: Status {resp.status_code}"
        text = extract_text(resp.text)[:MAX_PAGE_CHARS]
        return f"Source: {url}\nContent:\n{text}"
