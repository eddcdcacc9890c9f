"""Browser MCP Server - Main server implementation."""

import base64
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from mcp.server.fastmcp import Context, FastMCP
from playwright.async_api import (
    Browser,
    ConsoleMessage,
    Page,
    Playwright,
    async_playwright,
)
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

MAX_CONSOLE_LOGS = 1000
BROWSER_TYPES = ("chromium", "firefox", "webkit")

# Wraps console methods while the user script runs so its output is returned
# alongside the result; the originals are restored afterwards.
EVALUATE_WRAPPER = """
(script) => {
  const logs = [];
  const original = {};
  for (const method of ["log", "info", "warn", "error"]) {
    original[method] = console[method];
    console[method] = (...args) => {
      logs.push(`[${method}] ${args.join(" ")}`);
      original[method](...args);
    };
  }
  try {
    const result = eval(script);
    return { result, logs };
  } finally {
    Object.assign(console, original);
  }
}
"""


@dataclass
class BrowserState:
    """The single page every tool acts on, plus what it has produced."""

    playwright: Playwright
    browser: Browser
    page: Page

    console_logs: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_CONSOLE_LOGS))
    screenshots: Dict[str, bytes] = field(default_factory=dict)


class NavigationResult(BaseModel):
    """Navigation operation result."""

    success: bool
    url: str
    error: Optional[str] = None


class ScreenshotResult(BaseModel):
    """Screenshot result."""

    success: bool
    name: str
    data: Optional[str] = None  # base64 encoded
    format: str = "png"
    width: Optional[int] = None
    height: Optional[int] = None
    resource_uri: Optional[str] = None
    error: Optional[str] = None


class ScriptResult(BaseModel):
    """Script evaluation result."""

    success: bool
    result: Any = None
    console: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class Config:
    """Server configuration."""

    def __init__(
        self,
        headless: bool = True,
        browser_type: str = "chromium",
        timeout: int = 30000,
        channel: Optional[str] = None,
        executable_path: Optional[str] = None,
        default_screenshot_width: int = 800,
        default_screenshot_height: int = 600,
    ):
        self.headless = headless
        self.browser_type = browser_type
        self.timeout = timeout
        self.channel = channel
        self.executable_path = executable_path
        self.default_screenshot_width = default_screenshot_width
        self.default_screenshot_height = default_screenshot_height


# Global configuration
config = Config()


def format_console_message(message_type: str, text: str) -> str:
    return f"[{message_type}] {text}"


def _launch_options() -> Dict[str, Any]:
    options: Dict[str, Any] = {"headless": config.headless}
    if config.channel:
        options["channel"] = config.channel
    if config.executable_path:
        options["executable_path"] = config.executable_path
    return options


def _record_console(state: BrowserState, message: ConsoleMessage) -> None:
    state.console_logs.append(format_console_message(message.type, message.text))


async def _open_session(playwright: Playwright) -> BrowserState:
    """Launch the configured browser with one page and console capture."""
    if config.browser_type not in BROWSER_TYPES:
        raise ValueError(f"Unsupported browser type: {config.browser_type}")

    browser = await getattr(playwright, config.browser_type).launch(**_launch_options())
    page = await browser.new_page()
    page.set_default_timeout(config.timeout)
    state = BrowserState(playwright=playwright, browser=browser, page=page)
    page.on("console", lambda message: _record_console(state, message))
    return state


@asynccontextmanager
async def browser_lifespan(server: FastMCP) -> AsyncIterator[BrowserState]:
    """One browser for the lifetime of the server, closed on shutdown."""
    async with async_playwright() as playwright:
        state = await _open_session(playwright)
        logger.info("%s ready (headless=%s)", config.browser_type, config.headless)
        try:
            yield state
        finally:
            try:
                await state.browser.close()
            except Exception as exc:
                logger.warning("Browser did not close cleanly: %s", exc)


# Create FastMCP server with browser lifespan
mcp = FastMCP("Browser MCP Server", lifespan=browser_lifespan)


def get_browser_state(ctx: Context) -> BrowserState:
    """Get browser state from context."""
    return ctx.request_context.lifespan_context


def get_current_page(ctx: Context) -> Page:
    """Get the active page from context."""
    return get_browser_state(ctx).page


# Navigation Tools
@mcp.tool()
async def navigate(url: str, ctx: Context) -> NavigationResult:
    """Navigate the browser to a specified URL.

    Args:
        url: The URL to navigate to (e.g., "https://example.com")
        ctx: MCP context containing the browser state

    Returns:
        NavigationResult with success status, final URL (after redirects), and any errors
    """
    try:
        page = get_current_page(ctx)
        await page.goto(url)
        return NavigationResult(success=True, url=page.url)
    except Exception as e:
        return NavigationResult(success=False, url=url, error=str(e))


@mcp.tool()
async def screenshot(
    name: str,
    ctx: Context,
    selector: Optional[str] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
) -> ScreenshotResult:
    """Take a screenshot of the current page or a specific element.

    The viewport is resized first. The PNG is kept for the rest of the session
    and can be read back as the ``screenshot://<name>`` resource.

    Args:
        name: Name to store the screenshot under
        ctx: MCP context containing the browser state
        selector: CSS selector of an element to capture instead of the viewport
        width: Viewport width in pixels (default: 800)
        height: Viewport height in pixels (default: 600)

    Returns:
        ScreenshotResult with the base64 PNG and the resource URI it is stored at
    """
    width = width or config.default_screenshot_width
    height = height or config.default_screenshot_height
    try:
        state = get_browser_state(ctx)
        page = state.page
        await page.set_viewport_size({"width": width, "height": height})

        if selector:
            element = await page.query_selector(selector)
            if not element:
                return ScreenshotResult(
                    success=False, name=name, error=f"Element not found: {selector}"
                )
            screenshot_bytes = await element.screenshot()
        else:
            screenshot_bytes = await page.screenshot(full_page=False)

        state.screenshots[name] = screenshot_bytes
        return ScreenshotResult(
            success=True,
            name=name,
            data=base64.b64encode(screenshot_bytes).decode("utf-8"),
            width=width,
            height=height,
            resource_uri=f"screenshot://{name}",
        )
    except Exception as e:
        return ScreenshotResult(success=False, name=name, error=str(e))


# DOM Interaction Tools
@mcp.tool()
async def click(selector: str, ctx: Context) -> Dict[str, Any]:
    """Click an element on the page.

    Args:
        selector: CSS selector for the element to click
        ctx: MCP context containing the browser state

    Returns:
        Dict with success status, selector used, and any error messages
    """
    try:
        page = get_current_page(ctx)
        await page.click(selector)
        return {"success": True, "selector": selector}
    except Exception as e:
        return {"success": False, "selector": selector, "error": str(e)}


@mcp.tool()
async def fill(selector: str, value: str, ctx: Context) -> Dict[str, Any]:
    """Fill out an input field once it appears.

    Args:
        selector: CSS selector for the input field
        value: Value to fill
        ctx: MCP context containing the browser state

    Returns:
        Dict with success status, selector, value set, and any error messages
    """
    try:
        page = get_current_page(ctx)
        await page.wait_for_selector(selector)
        await page.fill(selector, value)
        return {"success": True, "selector": selector, "value": value}
    except Exception as e:
        return {"success": False, "selector": selector, "value": value, "error": str(e)}


@mcp.tool()
async def select(selector: str, value: str, ctx: Context) -> Dict[str, Any]:
    """Select an option of a <select> element.

    Args:
        selector: CSS selector for the select element
        value: Option value to select
        ctx: MCP context containing the browser state

    Returns:
        Dict with success status, selector, selected value, and any error messages
    """
    try:
        page = get_current_page(ctx)
        await page.wait_for_selector(selector)
        await page.select_option(selector, value)
        return {"success": True, "selector": selector, "value": value}
    except Exception as e:
        return {"success": False, "selector": selector, "value": value, "error": str(e)}


@mcp.tool()
async def hover(selector: str, ctx: Context) -> Dict[str, Any]:
    """Hover an element on the page.

    Args:
        selector: CSS selector for the element to hover
        ctx: MCP context containing the browser state

    Returns:
        Dict with success status, selector, and any error messages
    """
    try:
        page = get_current_page(ctx)
        await page.wait_for_selector(selector)
        await page.hover(selector)
        return {"success": True, "selector": selector}
    except Exception as e:
        return {"success": False, "selector": selector, "error": str(e)}


# Script Evaluation Tool
@mcp.tool()
async def evaluate(script: str, ctx: Context) -> ScriptResult:
    """Execute JavaScript in the browser console.

    Console output produced while the script runs is returned with the result.

    Args:
        script: JavaScript code to execute (e.g., "document.title")
        ctx: MCP context containing the browser state

    Returns:
        ScriptResult with the execution result, captured console lines, and any errors
    """
    try:
        page = get_current_page(ctx)
        outcome = await page.evaluate(EVALUATE_WRAPPER, script)
        return ScriptResult(
            success=True,
            result=outcome.get("result"),
            console=list(outcome.get("logs") or []),
        )
    except Exception as e:
        return ScriptResult(success=False, error=f"Script execution failed: {e}")


# Resources
@mcp.resource("console://logs", mime_type="text/plain")
def console_logs() -> str:
    """Browser console logs."""
    state = get_browser_state(mcp.get_context())
    return "\n".join(state.console_logs)


@mcp.resource("screenshot://{name}", mime_type="image/png")
def stored_screenshot(name: str) -> bytes:
    """A screenshot taken earlier in this session."""
    state = get_browser_state(mcp.get_context())
    if name not in state.screenshots:
        raise ValueError(f"Resource not found: screenshot://{name}")
    return state.screenshots[name]


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(description="Browser MCP Server")
    parser.add_argument("transport", choices=["stdio", "http"], help="Transport type")
    parser.add_argument("--port", type=int, default=8000, help="Port for HTTP transport")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("--browser", choices=BROWSER_TYPES, default=config.browser_type)
    parser.add_argument(
        "--timeout", type=int, default=config.timeout, help="Per-action timeout (ms)"
    )
    parser.add_argument("--channel", help="Installed Chrome/Edge channel, e.g. 'chrome' or 'msedge'")
    parser.add_argument("--executable-path", help="Browser binary to launch instead of the bundled one")
    return parser


def main():
    """Main entry point."""
    args = build_parser().parse_args()

    config.headless = not args.headed
    config.browser_type = args.browser
    config.timeout = args.timeout
    config.channel = args.channel
    config.executable_path = args.executable_path

    logging.basicConfig(level=logging.INFO)

    if args.transport == "stdio":
        mcp.run()
    else:
        import uvicorn

        uvicorn.run(mcp.streamable_http_app(), host="0.0.0.0", port=args.port)


if __name__ == "__main__":
    main()
