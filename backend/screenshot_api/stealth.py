"""
Fingerprint evasion layer

playwright-stealth patches the usual automation tells (webdriver flag,
plugins, languages, notification permission, chrome.runtime, WebGL
vendor/renderer). A small init script on top adds what it lacks: canvas
export noise and a non-zero outer window size. Both are installed on the
browsing context before the first navigation.

Canvas noise limits: each export XORs one random pixel with a running
counter and makes it opaque, so the first 2**24 - 1 exports in a document
are pairwise distinct, a 1x1 canvas included. Zero-sized and cross-origin
(tainted) canvases are exported unchanged, and a lossy type such as
image/jpeg may quantize the nudge away.
"""

import logging
from typing import Optional, Sequence

from playwright_stealth import Stealth

from .errors import SessionError

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGES = ("zh-CN", "zh", "en-US", "en")
DEFAULT_WEBGL_VENDOR = "Intel Open Source Technology Center"
DEFAULT_WEBGL_RENDERER = "Mesa DRI Intel(R) UHD Graphics (Coffeelake 3x8 GT2)"

EVASION_SCRIPT = """
(() => {
  // Headless windows report zero outer size
  Object.defineProperty(window, 'outerWidth', { get: () => window.innerWidth });
  Object.defineProperty(window, 'outerHeight', { get: () => window.innerHeight });

  let exportCount = 0;
  const noisyCopy = (canvas) => {
    if (!canvas.width || !canvas.height) return canvas;
    try {
      const copy = document.createElement('canvas');
      copy.width = canvas.width;
      copy.height = canvas.height;
      const ctx = copy.getContext('2d');
      ctx.drawImage(canvas, 0, 0);
      const x = Math.floor(Math.random() * canvas.width);
      const y = Math.floor(Math.random() * canvas.height);
      const pixel = ctx.getImageData(x, y, 1, 1);
      exportCount = (exportCount % 0xffffff) + 1;
      pixel.data[0] ^= exportCount & 0xff;
      pixel.data[1] ^= (exportCount >> 8) & 0xff;
      pixel.data[2] ^= (exportCount >> 16) & 0xff;
      // Opaque, so premultiplied storage keeps the colour exactly
      pixel.data[3] = 255;
      ctx.putImageData(pixel, x, y);
      return copy;
    } catch (e) {
      return canvas;
    }
  };
  const toDataURL = HTMLCanvasElement.prototype.toDataURL;
  const toBlob = HTMLCanvasElement.prototype.toBlob;
  HTMLCanvasElement.prototype.toDataURL = function (...args) {
    return toDataURL.apply(noisyCopy(this), args);
  };
  HTMLCanvasElement.prototype.toBlob = function (...args) {
    return toBlob.apply(noisyCopy(this), args);
  };
})();
"""

FONT_NORMALIZATION_CSS = """
@import url('https://fonts.googleapis.com/css2?family=Noto+Sans+SC:wght@400;700&display=swap');
* {
  font-family: 'Noto Sans SC', -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif !important;
}
"""


def build_stealth(
    languages: Sequence[str] = DEFAULT_LANGUAGES,
    webgl_vendor: str = DEFAULT_WEBGL_VENDOR,
    webgl_renderer: str = DEFAULT_WEBGL_RENDERER,
) -> Stealth:
    if not languages:
        raise ValueError("languages must not be empty")
    return Stealth(
        chrome_runtime=True,
        navigator_languages_override=tuple(languages),
        webgl_vendor_override=webgl_vendor,
        webgl_renderer_override=webgl_renderer,
    )


def languages_for_locale(locale: str) -> tuple:
    """navigator.languages consistent with the context locale"""
    primary = locale.split("-")[0]
    languages = [locale]
    if primary != locale:
        languages.append(primary)
    for fallback in ("en-US", "en"):
        if fallback not in languages:
            languages.append(fallback)
    return tuple(languages)


async def apply_evasion(session, stealth: Optional[Stealth] = None, script: str = EVASION_SCRIPT):
    """Install stealth patches and the extra init script, before any navigation"""
    try:
        await session.apply_stealth(stealth or build_stealth())
        await session.add_init_script(script)
    except Exception as e:
        raise SessionError(f"Failed to install evasion script: {e}", cause=e) from e
    logger.debug("Evasion installed")
