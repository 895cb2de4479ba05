import pytest
import pytest_asyncio
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright
from playwright_stealth import Stealth

from screenshot_api.browser import PlaywrightSession
from screenshot_api.errors import SessionError
from screenshot_api.stealth import (
    DEFAULT_LANGUAGES,
    DEFAULT_WEBGL_RENDERER,
    DEFAULT_WEBGL_VENDOR,
    EVASION_SCRIPT,
    apply_evasion,
    build_stealth,
    languages_for_locale,
)

from tests.fakes import FakeSession

CANVAS_PAGE = (
    "data:text/html,<canvas id='one' width='1' height='1'></canvas>"
    "<canvas id='wide' width='300' height='150'></canvas>"
    "<canvas id='empty' width='0' height='0'></canvas>"
)

EXPORT_FIVE_TIMES = """(id) => {
  const canvas = document.getElementById(id);
  return [0, 1, 2, 3, 4].map(() => canvas.toDataURL());
}"""


@pytest_asyncio.fixture
async def browser_context():
    async with async_playwright() as playwright:
        try:
            browser = await playwright.chromium.launch(headless=True)
        except PlaywrightError as e:
            pytest.skip(f"Chromium is not installed: {e}")
        context = await browser.new_context()
        try:
            yield playwright, browser, context
        finally:
            await browser.close()


# ============================================================================
# CONFIGURATION
# ============================================================================

def test_stealth_uses_configured_overrides():
    stealth = build_stealth(("en-GB", "en"), "Vendor", "Renderer")

    assert isinstance(stealth, Stealth)
    assert tuple(stealth.navigator_languages_override) == ("en-GB", "en")
    assert stealth.webgl_vendor_override == "Vendor"
    assert stealth.webgl_renderer_override == "Renderer"


def test_default_stealth_uses_default_gpu_strings():
    stealth = build_stealth()

    assert tuple(stealth.navigator_languages_override) == DEFAULT_LANGUAGES
    assert stealth.webgl_vendor_override == DEFAULT_WEBGL_VENDOR
    assert stealth.webgl_renderer_override == DEFAULT_WEBGL_RENDERER


def test_empty_language_list_is_rejected():
    with pytest.raises(ValueError):
        build_stealth([])


def test_extra_script_covers_what_the_library_does_not():
    for marker in ("outerWidth", "outerHeight", "toDataURL", "toBlob"):
        assert marker in EVASION_SCRIPT, marker


@pytest.mark.parametrize("locale,expected", [
    ("zh-CN", ("zh-CN", "zh", "en-US", "en")),
    ("en-US", ("en-US", "en")),
    ("de", ("de", "en-US", "en")),
])
def test_languages_follow_locale(locale, expected):
    assert languages_for_locale(locale) == expected


# ============================================================================
# INSTALLATION
# ============================================================================

@pytest.mark.asyncio
async def test_apply_evasion_installs_library_then_script():
    session = FakeSession()
    stealth = build_stealth()

    await apply_evasion(session, stealth, "/* extra */")

    assert session.calls == [("apply_stealth", stealth), ("add_init_script", "/* extra */")]


@pytest.mark.asyncio
async def test_apply_evasion_failure_is_session_error():
    session = FakeSession(init_script_error=RuntimeError("target closed"))

    with pytest.raises(SessionError) as excinfo:
        await apply_evasion(session)

    assert "target closed" in excinfo.value.details


# ============================================================================
# IN A REAL BROWSER
# ============================================================================

@pytest.mark.asyncio
async def test_single_pixel_canvas_exports_all_differ(browser_context):
    _, _, context = browser_context
    await context.add_init_script(EVASION_SCRIPT)
    page = await context.new_page()
    await page.goto(CANVAS_PAGE)

    exports = await page.evaluate(EXPORT_FIVE_TIMES, "one")

    assert len(set(exports)) == 5


@pytest.mark.asyncio
async def test_drawn_canvas_exports_all_differ(browser_context):
    _, _, context = browser_context
    await context.add_init_script(EVASION_SCRIPT)
    page = await context.new_page()
    await page.goto(CANVAS_PAGE)
    await page.evaluate("""() => {
      const ctx = document.getElementById('wide').getContext('2d');
      ctx.fillStyle = '#336699';
      ctx.fillRect(10, 10, 100, 50);
    }""")

    exports = await page.evaluate(EXPORT_FIVE_TIMES, "wide")

    assert len(set(exports)) == 5


@pytest.mark.asyncio
async def test_empty_canvas_is_exported_unchanged(browser_context):
    _, _, context = browser_context
    await context.add_init_script(EVASION_SCRIPT)
    page = await context.new_page()
    await page.goto(CANVAS_PAGE)

    exports = await page.evaluate(EXPORT_FIVE_TIMES, "empty")

    assert len(set(exports)) == 1


@pytest.mark.asyncio
async def test_evasion_hides_automation_in_browser(browser_context):
    playwright, browser, context = browser_context
    session = PlaywrightSession(playwright, browser, context)
    await apply_evasion(session, build_stealth(("en-GB", "en")))
    page = await context.new_page()
    await page.goto("data:text/html,<p>hi</p>")

    signals = await page.evaluate("""() => ({
      webdriver: navigator.webdriver,
      languages: navigator.languages,
      outerWidth: window.outerWidth,
    })""")

    assert not signals["webdriver"]
    assert signals["languages"] == ["en-GB", "en"]
    assert signals["outerWidth"] > 0
