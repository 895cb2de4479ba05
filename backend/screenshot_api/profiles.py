"""
Per-site capture profiles

Sites that fight automation get longer waits, slower scrolling and more
retries. Lookup is substring containment against the hostname, in table
order, so a more specific key must be declared before a broader one.
"""

import random
from types import MappingProxyType
from typing import Mapping, Optional, Sequence, Tuple

from .models import CaptureProfile
from .utils import hostname_of

USER_AGENTS: Tuple[str, ...] = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36 Edg/119.0.0.0',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:120.0) Gecko/20100101 Firefox/120.0',
)

_SEC_CH_UA = '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"'

DEFAULT_PROFILE = CaptureProfile(
    name="default",
    wait_time_ms=2000,
    scroll_delay_ms=1000,
    max_retries=2,
    headers={
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
        'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.8',
    },
)

PROFILE_TABLE: Tuple[Tuple[str, CaptureProfile], ...] = (
    ("baidu.com", CaptureProfile(
        name="baidu.com",
        wait_time_ms=5000,
        scroll_delay_ms=2000,
        max_retries=3,
        headers={
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
            'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.8',
            'Accept-Encoding': 'gzip, deflate, br',
            'Cache-Control': 'max-age=0',
            'Sec-Fetch-Dest': 'document',
            'Sec-Fetch-Mode': 'navigate',
            'Sec-Fetch-Site': 'none',
            'Sec-Fetch-User': '?1',
            'Upgrade-Insecure-Requests': '1',
        },
    )),
    ("zhihu.com", CaptureProfile(
        name="zhihu.com",
        wait_time_ms=6000,
        scroll_delay_ms=3000,
        max_retries=5,
        headers={
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
            'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.8',
            'Accept-Encoding': 'gzip, deflate, br',
            'Cache-Control': 'no-cache',
            'Pragma': 'no-cache',
            'Sec-Ch-Ua': _SEC_CH_UA,
            'Sec-Ch-Ua-Mobile': '?0',
            'Sec-Ch-Ua-Platform': '"macOS"',
            'Sec-Fetch-Dest': 'document',
            'Sec-Fetch-Mode': 'navigate',
            'Sec-Fetch-Site': 'none',
        },
    )),
    ("toutiao.com", CaptureProfile(
        name="toutiao.com",
        wait_time_ms=7000,
        scroll_delay_ms=3500,
        max_retries=4,
        headers={
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8',
            'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.8',
            'Accept-Encoding': 'gzip, deflate, br',
            'Cache-Control': 'no-cache',
            'Pragma': 'no-cache',
            'Sec-Fetch-Dest': 'document',
            'Sec-Fetch-Mode': 'navigate',
            'Sec-Fetch-Site': 'none',
            'Sec-Fetch-User': '?1',
            'Upgrade-Insecure-Requests': '1',
            'Sec-Ch-Ua': _SEC_CH_UA,
            'Sec-Ch-Ua-Mobile': '?0',
            'Sec-Ch-Ua-Platform': '"macOS"',
            'Sec-Ch-Ua-Full-Version-List': '"Not_A Brand";v="8.0.0.0", "Chromium";v="120.0.6099.109", "Google Chrome";v="120.0.6099.109"',
        },
    )),
    ("taobao.com", CaptureProfile(
        name="taobao.com",
        wait_time_ms=4000,
        scroll_delay_ms=2500,
        max_retries=4,
        headers={
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'zh-CN,zh;q=0.9',
            'Accept-Encoding': 'gzip, deflate, br',
        },
    )),
)

# Fast mode ceilings
FAST_WAIT_CAP_MS = 800
FAST_SCROLL_CAP_MS = 300


def resolve_profile(
    url: str,
    table: Sequence[Tuple[str, CaptureProfile]] = PROFILE_TABLE,
    default: CaptureProfile = DEFAULT_PROFILE,
) -> CaptureProfile:
    """Pick the first profile whose key occurs in the URL's hostname"""
    hostname = hostname_of(url)
    if not hostname:
        return default
    for key, profile in table:
        if key in hostname:
            return profile
    return default


def scale_for_fast_mode(profile: CaptureProfile) -> CaptureProfile:
    """Shrink waits and allow a single attempt; never lengthens anything"""
    return profile.model_copy(update={
        "wait_time_ms": min(profile.wait_time_ms // 3, FAST_WAIT_CAP_MS),
        "scroll_delay_ms": min(profile.scroll_delay_ms // 3, FAST_SCROLL_CAP_MS),
        "max_retries": 1,
    })


def merge_headers(site: Mapping[str, str], custom: Optional[Mapping[str, str]] = None) -> Mapping[str, str]:
    """Overlay caller headers on site headers; the caller wins"""
    merged = dict(site)
    if custom:
        merged.update(custom)
    return MappingProxyType(merged)


def pick_user_agent(rng: Optional[random.Random] = None, pool: Sequence[str] = USER_AGENTS) -> str:
    return (rng or random).choice(pool)
