"""
Render Farm - pre-renders SPA routes to static HTML with headless Chromium.

One static server and one browser context per call. Routes render in
sequential batches of `concurrency` pages; every requested route ends up
with an index.html, either rendered or a copy of the SPA shell.
"""
import asyncio
import logging
import posixpath
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Optional

from playwright.async_api import BrowserContext, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from buildfarm.core.errors import RenderError, ToolError
from buildfarm.core.static_server import INDEX_DOCUMENT, StaticServer

logger = logging.getLogger(__name__)

USER_AGENT = "BuildFarm-Prerenderer/1.0"

CHROMIUM_ARGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"]

# True once the mount element holds some markup
READY_SCRIPT = """(selector) => {
    const el = document.querySelector(selector);
    return !!el && el.innerHTML.trim().length > 0;
}"""

# Added on top of the page/ready/grace budget before a route is abandoned
ROUTE_SLACK_MS = 5_000


@dataclass(frozen=True)
class RenderSettings:
    """Per-route timing and validation settings."""
    page_timeout_ms: int = 30_000
    ready_timeout_ms: int = 10_000
    grace_ms: int = 2_000
    ready_selector: str = "#root"
    min_html_bytes: int = 256

    @property
    def route_budget_s(self) -> float:
        total = self.page_timeout_ms + self.ready_timeout_ms + self.grace_ms + ROUTE_SLACK_MS
        return total / 1000


@dataclass
class RenderTask:
    """A single route and where its document goes."""
    route: str
    output_path: Path


@dataclass
class RenderFailure:
    route: str
    reason: str


@dataclass
class RenderSummary:
    rendered: list[str] = field(default_factory=list)
    failed: list[RenderFailure] = field(default_factory=list)


# =============================================================================
# Route helpers
# =============================================================================

def normalize_route(route: str) -> str:
    """
    Normalize a route to '/a/b' form.

    Raises:
        ValueError: Route contains traversal segments or is not a path
    """
    if not isinstance(route, str):
        raise ValueError(f"Route must be a string: {route!r}")
    path = route.split("?", 1)[0].split("#", 1)[0].strip().replace("\\", "/")
    segments = [s for s in path.split("/") if s]
    if any(s in (".", "..") for s in segments):
        raise ValueError(f"Invalid route: {route}")
    if any(":" in s for s in segments):
        raise ValueError(f"Invalid route: {route}")
    return "/" + "/".join(segments)


def route_depth(route: str) -> int:
    return len([s for s in route.split("/") if s])


def prepare_routes(routes: list[str]) -> list[str]:
    """Normalize, dedupe and order routes shallowest first."""
    unique = {normalize_route(r) for r in routes}
    return sorted(unique, key=lambda r: (route_depth(r), r))


def batch_routes(routes: list[str], concurrency: int) -> list[list[str]]:
    """Split routes into consecutive batches of at most `concurrency`."""
    size = max(1, concurrency)
    return [routes[i:i + size] for i in range(0, len(routes), size)]


def output_path_for(build_dir: Path, route: str) -> Path:
    """Document location for a route; '/' maps to the root index."""
    relative = route.lstrip("/")
    if not relative:
        return Path(build_dir) / INDEX_DOCUMENT
    return Path(build_dir) / posixpath.normpath(relative) / INDEX_DOCUMENT


# =============================================================================
# Browser
# =============================================================================

BrowserLauncher = Callable[[], AsyncContextManager[Any]]


@asynccontextmanager
async def launch_chromium(user_agent: str = USER_AGENT) -> AsyncIterator[BrowserContext]:
    """Launch headless Chromium and yield one shared browsing context."""
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(headless=True, args=CHROMIUM_ARGS)
        try:
            context = await browser.new_context(user_agent=user_agent)
            try:
                yield context
            finally:
                await context.close()
        finally:
            await browser.close()
            logger.info("browser_closed")


# =============================================================================
# Render farm
# =============================================================================

class RenderFarm:
    """Converts SPA routes into static documents."""

    def __init__(
        self,
        settings: Optional[RenderSettings] = None,
        launcher: BrowserLauncher = launch_chromium,
        server_factory: Callable[..., Any] = StaticServer,
    ):
        self.settings = settings or RenderSettings()
        self.launcher = launcher
        self.server_factory = server_factory

    async def _capture(self, context: Any, url: str, route: str, job_id: Optional[str]) -> str:
        settings = self.settings
        page = await context.new_page()
        try:
            await page.goto(url, wait_until="networkidle", timeout=settings.page_timeout_ms)
            try:
                await page.wait_for_function(
                    READY_SCRIPT,
                    arg=settings.ready_selector,
                    timeout=settings.ready_timeout_ms,
                )
            except PlaywrightTimeoutError:
                logger.warning(
                    f"render_ready_timeout job_id={job_id} route={route} "
                    f"selector={settings.ready_selector}"
                )
                await asyncio.sleep(settings.grace_ms / 1000)
            return await page.content()
        finally:
            await page.close()

    async def _render_one(
        self,
        context: Any,
        server: Any,
        task: RenderTask,
        shell: bytes,
        summary: RenderSummary,
        job_id: Optional[str],
    ) -> None:
        try:
            html = await asyncio.wait_for(
                self._capture(context, server.url_for(task.route), task.route, job_id),
                timeout=self.settings.route_budget_s,
            )
            size = len(html.encode("utf-8"))
            if size < self.settings.min_html_bytes:
                raise RenderError(f"Rendered page is empty ({size} bytes)", route=task.route)

            task.output_path.parent.mkdir(parents=True, exist_ok=True)
            task.output_path.write_text(html, encoding="utf-8")
            summary.rendered.append(task.route)
            logger.info(f"route_rendered job_id={job_id} route={task.route} bytes={size}")
        except asyncio.TimeoutError:
            self._fallback(task, shell, summary, "Render timed out", job_id)
        except Exception as e:
            self._fallback(task, shell, summary, str(e) or type(e).__name__, job_id)

    def _fallback(
        self,
        task: RenderTask,
        shell: bytes,
        summary: RenderSummary,
        reason: str,
        job_id: Optional[str],
    ) -> None:
        first_line = reason.strip().splitlines()[0] if reason.strip() else reason
        summary.failed.append(RenderFailure(route=task.route, reason=first_line))
        task.output_path.parent.mkdir(parents=True, exist_ok=True)
        task.output_path.write_bytes(shell)
        logger.warning(f"route_fallback job_id={job_id} route={task.route} reason={first_line}")

    async def render_all(
        self,
        build_dir: Path,
        routes: list[str],
        concurrency: int,
        job_id: Optional[str] = None,
    ) -> RenderSummary:
        """
        Render every route under build_dir.

        Returns:
            RenderSummary listing rendered and failed routes

        Raises:
            ToolError: Build output has no root index document
            ValueError: A route is malformed
        """
        build_dir = Path(build_dir)
        ordered = prepare_routes(routes)
        summary = RenderSummary()
        if not ordered:
            return summary

        index_path = build_dir / INDEX_DOCUMENT
        if not index_path.is_file():
            raise ToolError(f"Build output has no {INDEX_DOCUMENT}")
        # Fallbacks and the server use the SPA shell, not the rendered root page
        shell = index_path.read_bytes()

        batches = batch_routes(ordered, concurrency)
        logger.info(
            f"render_start job_id={job_id} routes={len(ordered)} "
            f"batches={len(batches)} concurrency={concurrency}"
        )

        async with AsyncExitStack() as stack:
            server = await stack.enter_async_context(self.server_factory(build_dir, shell=shell))
            context = await stack.enter_async_context(self.launcher())

            for batch in batches:
                tasks = [RenderTask(route=r, output_path=output_path_for(build_dir, r)) for r in batch]
                await asyncio.gather(*(
                    self._render_one(context, server, task, shell, summary, job_id)
                    for task in tasks
                ))

        logger.info(
            f"render_done job_id={job_id} rendered={len(summary.rendered)} "
            f"failed={len(summary.failed)}"
        )
        return summary
