#!/usr/bin/env python3
"""
Research Tools
webSearch and deepResearch executors backed by Wikipedia and DuckDuckGo
"""

import asyncio
import html
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

import requests

from ai_operon.core.config import config
from ai_operon.orchestration.plan import Step, StepResult
from ai_operon.tools.tool_registry import Executor, ExecutorContext

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; AI-Operon/1.0)"
WIKIPEDIA_API = "https://en.wikipedia.org/w/api.php"
WIKIPEDIA_SUMMARY = "https://en.wikipedia.org/api/rest_v1/page/summary/{title}"
DUCKDUCKGO_HTML = "https://html.duckduckgo.com/html/"
MAX_PAGE_CHARS = 3000

QUERY_PROMPT = """
You are an AI agent that returns queries for searching the web for the task the user provides.
Maximum of {max_queries} queries.

JSON Format:
{{
  "queries": ["query1", "query2"]
}}
"""

REPORT_PROMPT = """
You are an AI agent that evaluates data gathered from the web and returns a detailed report
for the user's task using that data.

JSON Format:
{{
  "report": "report using the web data"
}}

Web Data:
{web_data}

Information previous steps have gathered (do not duplicate it, build on it):
{input_data}
"""

_RESULT_LINK = re.compile(r'<a[^>]+class="result__a"[^>]+href="([^"]+)"[^>]*>(.*?)</a>', re.DOTALL)
_RESULT_SNIPPET = re.compile(r'<a[^>]+class="result__snippet"[^>]*>(.*?)</a>', re.DOTALL)
_TAGS = re.compile(r"<[^>]+>")
_SCRIPTS = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)


def strip_html(text: str) -> str:
    text = _SCRIPTS.sub(" ", text)
    text = html.unescape(_TAGS.sub(" ", text))
    return re.sub(r"\s+", " ", text).strip()


def _unwrap_duckduckgo(url: str) -> str:
    """DuckDuckGo wraps result links in a redirect: //duckduckgo.com/l/?uddg=<target>"""
    parsed = urlparse(url)
    if "duckduckgo.com" in parsed.netloc and parsed.path.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg")
        if target:
            return unquote(target[0])
    if url.startswith("//"):
        return "https:" + url
    return url


class WebResearcher:
    """Blocking HTTP lookups; executors run these in worker threads"""

    def __init__(self, timeout: Optional[int] = None, session: Optional[requests.Session] = None):
        self.timeout = timeout or config.get("tools.http_timeout_sec", 15)
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    def wikipedia(self, query: str, limit: int = 3) -> List[Dict[str, str]]:
        """Summaries of the top Wikipedia articles for a query"""
        response = self.session.get(WIKIPEDIA_API, params={
            "action": "query", "list": "search", "srsearch": query, "format": "json", "srlimit": limit
        }, timeout=self.timeout)
        response.raise_for_status()

        articles = []
        for hit in response.json().get("query", {}).get("search", []):
            title = hit.get("title")
            try:
                summary = self.session.get(
                    WIKIPEDIA_SUMMARY.format(title=requests.utils.quote(title)), timeout=self.timeout
                )
                summary.raise_for_status()
                extract = summary.json().get("extract")
            except (requests.RequestException, ValueError) as e:
                logger.debug("Error fetching article %s: %s", title, e)
                continue
            if extract:
                articles.append({"title": title, "extract": extract})
        return articles

    def duckduckgo(self, query: str, limit: int = 5) -> List[Dict[str, str]]:
        """Organic DuckDuckGo results as {title, url, snippet}"""
        response = self.session.post(DUCKDUCKGO_HTML, data={"q": query}, timeout=self.timeout)
        response.raise_for_status()

        links = _RESULT_LINK.findall(response.text)
        snippets = _RESULT_SNIPPET.findall(response.text)
        results = []
        for i, (href, title) in enumerate(links):
            url = _unwrap_duckduckgo(html.unescape(href))
            if "duckduckgo.com" in url or "ad_provider" in url:
                continue
            results.append({
                "title": strip_html(title),
                "url": url,
                "snippet": strip_html(snippets[i]) if i < len(snippets) else ""
            })
            if len(results) >= limit:
                break
        return results

    def fetch_text(self, url: str, max_chars: int = MAX_PAGE_CHARS) -> str:
        response = self.session.get(url, timeout=self.timeout)
        response.raise_for_status()
        return strip_html(response.text)[:max_chars]


async def generate_queries(context: ExecutorContext, task: str, max_queries: int) -> List[str]:
    try:
        response = await context.llm.call(QUERY_PROMPT.format(max_queries=max_queries), task)
        queries = response.get("queries", []) if isinstance(response, dict) else []
    except Exception as e:
        logger.warning("Query generation failed: %s", e)
        queries = []
    queries = [str(q) for q in queries if q][:max_queries]
    return queries or [task[:100]]


async def write_report(context: ExecutorContext, task: str, web_data: str) -> str:
    prompt = REPORT_PROMPT.format(web_data=web_data, input_data=context.input_data or "none")
    response = await context.llm.call(prompt, task)
    if isinstance(response, dict) and response.get("report"):
        return str(response["report"])
    if isinstance(response, dict) and response.get("rawContent"):
        return str(response["rawContent"])
    return "No report could be generated"


class WebSearchExecutor(Executor):
    """webSearch: quick lookup of basic information"""

    name = "webSearch"
    description = "quick and simple web search for basic information"

    def __init__(self, researcher: Optional[WebResearcher] = None, max_queries: int = 3):
        self.researcher = researcher or WebResearcher()
        self.max_queries = max_queries

    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        queries = await generate_queries(context, step.step, self.max_queries)
        web_data: List[str] = []
        for query in queries:
            try:
                articles = await asyncio.to_thread(self.researcher.wikipedia, query, 3)
            except (requests.RequestException, ValueError) as e:
                logger.warning("Error processing query %r: %s", query, e)
                continue
            web_data.extend(f'Wikipedia article on "{a["title"]}":\n{a["extract"]}' for a in articles)

        if not web_data:
            web_data.append("No search results found.")
        try:
            report = await write_report(context, step.step, "\n\n".join(web_data))
        except Exception as e:
            return self.failure(step, e)
        return self.result(step, report)


class DeepResearchExecutor(Executor):
    """deepResearch: many queries, search results, page contents and an encyclopedia summary"""

    name = "deepResearch"
    description = "deep research on a specific topic; set intensity 1-10 for search depth"

    def __init__(
        self,
        researcher: Optional[WebResearcher] = None,
        max_queries: Optional[int] = None,
        results_per_query: Optional[int] = None
    ):
        self.researcher = researcher or WebResearcher()
        self.max_queries = max_queries or config.get("tools.research_max_queries", 5)
        self.results_per_query = results_per_query or config.get("tools.research_results_per_query", 5)

    def query_budget(self, step: Step) -> int:
        if step.intensity is None:
            return self.max_queries
        return max(1, min(10, step.intensity))

    async def _research(self, query: str) -> List[str]:
        data: List[str] = []
        try:
            results = await asyncio.to_thread(self.researcher.duckduckgo, query, self.results_per_query)
        except requests.RequestException as e:
            logger.warning("Search failed for %r: %s", query, e)
            results = []

        for result in results:
            try:
                text = await asyncio.to_thread(self.researcher.fetch_text, result["url"])
            except requests.RequestException as e:
                logger.debug("Could not fetch %s: %s", result["url"], e)
                text = result["snippet"]
            data.append(f'{result["title"]} ({result["url"]}):\n{text}')

        try:
            articles = await asyncio.to_thread(self.researcher.wikipedia, query, 1)
            data.extend(f'Wikipedia article on "{a["title"]}":\n{a["extract"]}' for a in articles)
        except (requests.RequestException, ValueError) as e:
            logger.debug("Wikipedia lookup failed for %r: %s", query, e)
        return data

    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        queries = await generate_queries(context, step.step, self.query_budget(step))
        web_data: List[str] = []
        sources: List[Any] = []
        for query in queries:
            found = await self._research(query)
            web_data.extend(found)
            sources.append({"query": query, "results": len(found)})

        if not web_data:
            web_data.append("No search results found.")
        try:
            report = await write_report(context, step.step, "\n\n".join(web_data))
        except Exception as e:
            return self.failure(step, e)
        return self.result(step, {"report": report, "queries": sources})
