"""
Capture orchestration

Runs the navigate -> wait -> (scroll) -> capture state machine inside one
browser session, retrying failed attempts up to the site profile's budget,
then hands a successful raster to the persistence step.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from playwright_stealth import Stealth

from .browser import SessionLauncher, SessionOptions, open_session, select_launcher
from .config import Settings, settings as default_settings
from .errors import CaptureError, NavigationError, RenderError, SessionError
from .humanize import human_scroll, move_pointer, random_delay
from .models import (
    CaptureAttempt,
    CaptureProfile,
    CaptureRequest,
    CaptureResult,
    CaptureState,
    ScreenshotFailure,
    ScreenshotMetadata,
    ScreenshotResponse,
    ScreenshotSuccess,
    StorageOutcome,
)
from .profiles import (
    DEFAULT_PROFILE,
    PROFILE_TABLE,
    USER_AGENTS,
    merge_headers,
    pick_user_agent,
    resolve_profile,
    scale_for_fast_mode,
)
from .stealth import EVASION_SCRIPT, FONT_NORMALIZATION_CSS, apply_evasion, build_stealth, languages_for_locale
from .storage import BlobStore, StoredBlob, create_blob_store, persist
from .utils import measure_raster

logger = logging.getLogger(__name__)

# Analytics and tracking endpoints, aborted for every capture
TRACKER_PATTERNS: Tuple[str, ...] = (
    'google-analytics',
    'googletagmanager',
    'doubleclick',
    'facebook.com/tr',
    'baidu.com/tj',
    'cnzz.com',
)

MAX_VIEWPORT = (3840, 2160)


def is_tracker(url: str) -> bool:
    return any(pattern in url for pattern in TRACKER_PATTERNS)


def build_route_handler(block_resources: Iterable[str] = ()):
    """Route handler aborting blocked resource types and known trackers"""
    blocked = frozenset(block_resources)

    async def handle_route(route):
        request = route.request
        if request.resource_type in blocked or is_tracker(request.url):
            await route.abort()
        else:
            await route.continue_()

    return handle_route


@dataclass(frozen=True)
class CaptureTiming:
    """Randomized pause windows, in milliseconds"""

    # Before every navigation
    jitter_ms: Tuple[float, float] = (1000, 3000)
    # Between a failed attempt and the next one
    backoff_ms: Tuple[float, float] = (2000, 5000)
    # After scrolling back to the top
    settle_ms: Tuple[float, float] = (1000, 2000)


class ScreenshotService:
    """Captures screenshots of hostile pages and stores them"""

    def __init__(
        self,
        launcher: Optional[SessionLauncher] = None,
        store: Optional[BlobStore] = None,
        settings: Settings = default_settings,
        profiles: Sequence[Tuple[str, CaptureProfile]] = PROFILE_TABLE,
        default_profile: CaptureProfile = DEFAULT_PROFILE,
        user_agents: Sequence[str] = USER_AGENTS,
        stealth: Optional[Stealth] = None,
        evasion_script: str = EVASION_SCRIPT,
        timing: Optional[CaptureTiming] = None,
        rng: Optional[random.Random] = None,
        sleep=asyncio.sleep,
    ):
        self.launcher = launcher
        self.store = store
        self.settings = settings
        self.profiles = tuple(profiles)
        self.default_profile = default_profile
        self.user_agents = tuple(user_agents)
        self.stealth = stealth or build_stealth(languages_for_locale(settings.BROWSER_LOCALE))
        self.evasion_script = evasion_script
        self.timing = timing or CaptureTiming()
        self.rng = rng or random.Random()
        self.sleep = sleep

    async def initialize(self):
        """Pick the browser launcher and blob store for this deployment"""
        if self.launcher is None:
            self.launcher = select_launcher(self.settings)
        if self.store is None:
            self.store = create_blob_store(self.settings)
        logger.info(
            "Screenshot service initialized (launcher=%s, storage=%s, wait_until=%s)",
            self.launcher.name, self.store.name, self.settings.NAVIGATION_WAIT_UNTIL,
        )

    async def cleanup(self):
        if self.store is not None:
            await self.store.aclose()
        logger.info("Screenshot service cleaned up")

    async def health_check(self) -> bool:
        """Check that a browser session can be opened and used"""
        options = SessionOptions(
            width=800,
            height=600,
            user_agent=self.user_agents[0],
            locale=self.settings.BROWSER_LOCALE,
            timezone_id=self.settings.BROWSER_TIMEZONE,
        )
        try:
            async with open_session(self.launcher, options) as session:
                await session.navigate(
                    'data:text/html,<html><body>Health Check</body></html>', "load", 10000
                )
            return True
        except Exception as e:
            logger.warning("Health check failed: %s", e)
            return False

    def resolve_profile(self, request: CaptureRequest) -> CaptureProfile:
        profile = resolve_profile(request.url, self.profiles, self.default_profile)
        if request.fast_mode:
            profile = scale_for_fast_mode(profile)
        return profile

    def _session_options(self, request: CaptureRequest, profile: CaptureProfile, user_agent: str) -> SessionOptions:
        jitter = max(self.settings.VIEWPORT_JITTER, 0)
        return SessionOptions(
            width=min(request.width + self.rng.randint(0, jitter), MAX_VIEWPORT[0]),
            height=min(request.height + self.rng.randint(0, jitter), MAX_VIEWPORT[1]),
            user_agent=user_agent,
            locale=self.settings.BROWSER_LOCALE,
            timezone_id=self.settings.BROWSER_TIMEZONE,
            headers=dict(merge_headers(profile.headers, request.custom_headers)),
            default_timeout_ms=self.settings.PAGE_TIMEOUT_MS,
        )

    async def capture(self, request: CaptureRequest) -> CaptureResult:
        """Run the retry loop in a fresh session; the session is closed on return"""
        profile = self.resolve_profile(request)
        user_agent = pick_user_agent(self.rng, self.user_agents)
        options = self._session_options(request, profile, user_agent)
        attempts: List[CaptureAttempt] = []

        logger.info(
            "Capturing %s (profile=%s, retries=%d, full_page=%s)",
            request.url, profile.name, profile.max_retries, request.full_page,
        )

        async with open_session(self.launcher, options) as session:
            await apply_evasion(session, self.stealth, self.evasion_script)
            try:
                await session.route(build_route_handler(request.block_resources))
            except Exception as e:
                raise SessionError(f"Failed to install request interception: {e}", cause=e) from e

            for number in range(1, profile.max_retries + 1):
                if number > 1:
                    await self._prepare_retry(session, number)
                attempt = await self._run_attempt(session, request, profile, number)
                attempts.append(attempt)
                if attempt.succeeded:
                    break
                logger.warning(
                    "Attempt %d/%d for %s failed while %s: %s",
                    number, profile.max_retries, request.url, attempt.state.value, attempt.error.details,
                )

        last = attempts[-1]
        if last.succeeded:
            width, height = measure_raster(last.raster, (options.width, options.height))
            logger.info("Captured %s in %d attempt(s)", request.url, len(attempts))
            return CaptureResult(
                url=request.url,
                success=True,
                attempts=len(attempts),
                profile=profile.name,
                user_agent=user_agent,
                raster=last.raster,
                format=request.format,
                width=width,
                height=height,
                full_page=request.full_page,
                quality=request.quality if request.format == "jpeg" else None,
                history=self._history(attempts, CaptureState.SUCCEEDED),
            )

        logger.error(
            "Giving up on %s after %d attempt(s): %s", request.url, len(attempts), last.error.details
        )
        return CaptureResult(
            url=request.url,
            success=False,
            attempts=len(attempts),
            profile=profile.name,
            user_agent=user_agent,
            format=request.format,
            full_page=request.full_page,
            reason=last.error.reason,
            details=last.error.details,
            cause=last.error.cause or last.error,
            history=self._history(attempts, CaptureState.FAILED),
        )

    @staticmethod
    def _history(attempts: List[CaptureAttempt], final: CaptureState) -> Tuple[CaptureState, ...]:
        """Every state the request passed through, IDLE first and final last"""
        history = [CaptureState.IDLE]
        for attempt in attempts:
            if attempt.number > 1:
                history.append(CaptureState.RETRYING)
            history.extend(attempt.visited)
        history.append(final)
        return tuple(history)

    async def _run_attempt(self, session, request: CaptureRequest, profile: CaptureProfile,
                           number: int) -> CaptureAttempt:
        """One navigate/wait/simulate/capture pass; failures come back as data"""
        started = time.monotonic()
        state = CaptureState.NAVIGATING
        visited = [state]

        def failed(error: CaptureError) -> CaptureAttempt:
            return CaptureAttempt(
                number=number,
                elapsed_ms=(time.monotonic() - started) * 1000,
                error=error,
                state=state,
                visited=tuple(visited),
            )

        try:
            await random_delay(*self.timing.jitter_ms, rng=self.rng, sleep=self.sleep)
            status = await session.navigate(
                request.url, self.settings.NAVIGATION_WAIT_UNTIL, self.settings.NAVIGATION_TIMEOUT_MS
            )
            logger.debug("Navigated to %s (status=%s)", request.url, status)

            state = CaptureState.WAITING
            visited.append(state)
            await session.pause(profile.wait_time_ms)
            if self.settings.NORMALIZE_FONTS:
                await self._normalize_fonts(session)

            if request.full_page:
                state = CaptureState.SIMULATING
                visited.append(state)
                await human_scroll(
                    session,
                    profile.scroll_delay_ms,
                    max_steps=self.settings.SCROLL_MAX_STEPS,
                    max_duration_ms=self.settings.SCROLL_MAX_DURATION_MS,
                    settle_ms=self.timing.settle_ms,
                    rng=self.rng,
                    sleep=self.sleep,
                )

            state = CaptureState.CAPTURING
            visited.append(state)
            if request.wait_for_selector:
                await session.wait_for_selector(request.wait_for_selector, self.settings.SELECTOR_TIMEOUT_MS)
            await move_pointer(session, request.width, request.height, self.rng)
            raster = await session.capture(request.format, request.quality, request.full_page)
        except CaptureError as e:
            return failed(e)
        except Exception as e:
            error_cls = NavigationError if state == CaptureState.NAVIGATING else RenderError
            return failed(error_cls(str(e) or e.__class__.__name__, cause=e))

        if not raster:
            return failed(RenderError("Screenshot capture returned empty data"))

        return CaptureAttempt(
            number=number,
            elapsed_ms=(time.monotonic() - started) * 1000,
            raster=raster,
            visited=tuple(visited),
        )

    async def _normalize_fonts(self, session):
        try:
            await session.add_style(FONT_NORMALIZATION_CSS)
        except Exception as e:
            logger.warning("Font normalization skipped: %s", e)

    async def _prepare_retry(self, session, number: int):
        """Back off, then try a reload; a failed reload is left to the next navigation"""
        await random_delay(*self.timing.backoff_ms, rng=self.rng, sleep=self.sleep)
        try:
            await session.reload(self.settings.NAVIGATION_WAIT_UNTIL, self.settings.NAVIGATION_TIMEOUT_MS)
        except Exception as e:
            logger.info("Reload before attempt %d failed, continuing with retry: %s", number, e)

    async def take_screenshot(self, payload: Union[CaptureRequest, Dict[str, Any], None]) -> ScreenshotResponse:
        """Validate, capture and store; always returns a tagged response"""
        try:
            request = CaptureRequest.from_payload(payload)
            result = await self.capture(request)
        except CaptureError as e:
            logger.warning("Screenshot request rejected (%s): %s", e.reason, e.details)
            error = "Invalid request" if e.reason == "invalid_input" else "Failed to capture screenshot"
            return ScreenshotFailure(error=error, reason=e.reason, details=e.details)
        except Exception as e:
            logger.exception("Unexpected error while capturing")
            return ScreenshotFailure(
                error="Failed to capture screenshot", reason=CaptureError.reason, details=str(e)
            )

        if not result.success:
            return ScreenshotFailure(
                error="Failed to capture screenshot",
                reason=result.reason,
                details=f"{result.details} (after {result.attempts} attempt(s))",
            )

        outcome = await persist(result, self.store, self.settings.STORAGE_PREFIX)
        return self._build_success(result, outcome)

    @staticmethod
    def _build_success(result: CaptureResult, outcome: StorageOutcome) -> ScreenshotSuccess:
        metadata = ScreenshotMetadata(
            original_url=result.url,
            timestamp=result.timestamp.isoformat(),
            dimensions={"width": result.width, "height": result.height},
            full_page=result.full_page,
            quality=result.quality,
            format=result.format,
            attempts=result.attempts,
            user_agent=result.user_agent,
            profile=result.profile,
            storage=outcome.storage,
            filename=outcome.pathname,
            storage_error=outcome.error,
        )
        if outcome.storage == "primary":
            return ScreenshotSuccess(url=outcome.url, download_url=outcome.download_url, metadata=metadata)
        return ScreenshotSuccess(screenshot=outcome.data_url, metadata=metadata)

    async def take_screenshots(self, payloads: List[Dict[str, Any]]) -> List[ScreenshotResponse]:
        """Capture several pages, at most MAX_CONCURRENT_SCREENSHOTS at a time"""
        semaphore = asyncio.Semaphore(max(self.settings.MAX_CONCURRENT_SCREENSHOTS, 1))

        async def capture_one(payload: Dict[str, Any]) -> ScreenshotResponse:
            async with semaphore:
                return await self.take_screenshot(payload)

        start_time = time.time()
        results = await asyncio.gather(*(capture_one(p) for p in payloads), return_exceptions=True)
        processing_time = time.time() - start_time

        final_results: List[ScreenshotResponse] = []
        for payload, result in zip(payloads, results):
            if isinstance(result, Exception):
                logger.error("Screenshot failed for %s: %s", payload.get("url"), result)
                final_results.append(ScreenshotFailure(
                    error="Failed to capture screenshot", reason=CaptureError.reason, details=str(result)
                ))
            elif isinstance(result, BaseException):
                raise result
            else:
                final_results.append(result)

        succeeded = len([r for r in final_results if r.success])
        logger.info("Batch completed: %d URLs, %d successful, %.2fs", len(payloads), succeeded, processing_time)
        return final_results

    async def list_blobs(self, prefix: Optional[str] = None, limit: int = 10) -> List[StoredBlob]:
        prefix = self.settings.STORAGE_PREFIX if prefix is None else prefix
        return await self.store.list(prefix, limit)

    async def delete_blob(self, url: str) -> None:
        await self.store.delete(url)
