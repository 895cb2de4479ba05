"""
Human-like interaction to trigger lazy-loaded content

Scrolls in uneven steps with uneven pauses, re-measuring the page height
every step since lazy content keeps growing it. Infinite-scroll pages never
run out of height, so the loop also stops at a step and wall-clock ceiling.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

SCROLL_DISTANCE_PX: Tuple[int, int] = (100, 300)
SCROLL_JITTER_MS = 200
SETTLE_DELAY_MS: Tuple[int, int] = (1000, 2000)

Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class ScrollReport:
    steps: int
    distance: int
    scroll_height: int
    hit_ceiling: bool


async def random_delay(min_ms: float, max_ms: float, rng: Optional[random.Random] = None,
                       sleep: Sleeper = asyncio.sleep) -> float:
    """Sleep for a uniformly random number of milliseconds; returns it"""
    delay_ms = (rng or random).uniform(min_ms, max_ms) if max_ms > min_ms else min_ms
    if delay_ms > 0:
        await sleep(delay_ms / 1000)
    return delay_ms


async def human_scroll(
    session,
    scroll_delay_ms: float,
    max_steps: int = 200,
    max_duration_ms: float = 60000,
    settle_ms: Tuple[float, float] = SETTLE_DELAY_MS,
    rng: Optional[random.Random] = None,
    sleep: Sleeper = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ScrollReport:
    """Scroll to the bottom like a reader would, then back to the top"""
    rng = rng or random.Random()
    started = clock()
    distance = 0
    steps = 0
    scroll_height = await session.scroll_height()
    hit_ceiling = False

    while distance < scroll_height:
        if steps >= max_steps or (clock() - started) * 1000 >= max_duration_ms:
            hit_ceiling = True
            logger.warning(
                "Scroll stopped at ceiling after %d steps (%dpx of %dpx)",
                steps, distance, scroll_height,
            )
            break

        step = rng.randint(*SCROLL_DISTANCE_PX)
        await session.scroll_by(step)
        distance += step
        steps += 1

        await random_delay(scroll_delay_ms, scroll_delay_ms + SCROLL_JITTER_MS, rng, sleep)
        scroll_height = await session.scroll_height()

    await session.scroll_to_top()
    await random_delay(settle_ms[0], settle_ms[1], rng, sleep)

    logger.debug("Scrolled %dpx in %d steps (height %dpx)", distance, steps, scroll_height)
    return ScrollReport(steps=steps, distance=distance, scroll_height=scroll_height, hit_ceiling=hit_ceiling)


async def move_pointer(session, width: int, height: int, rng: Optional[random.Random] = None) -> Tuple[float, float]:
    """Park the pointer somewhere inside the viewport"""
    rng = rng or random
    x = rng.uniform(0, max(width - 1, 0))
    y = rng.uniform(0, max(height - 1, 0))
    await session.move_pointer(x, y)
    return x, y
