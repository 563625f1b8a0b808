"""
Bot-block detection heuristics.

Recognizes challenge, CAPTCHA and verification pages that a site serves
instead of its listings, so the chain can escalate to a stronger strategy.
"""

import re
from typing import Optional

# Challenge pages are small; big pages that mention a CDN in the footer are not blocks
MAX_CHALLENGE_PAGE_SIZE = 50000

CHALLENGE_MARKERS = (
    "checking your browser",
    "just a moment...",
    "cf_chl_opt",
    "cf-browser-verification",
    "challenge-platform",
    "__cf_chl_tk",
    "access denied",
    "request unsuccessful. incapsula",
    "px-captcha",
)

CAPTCHA_MARKERS = (
    "g-recaptcha",
    "h-captcha",
    "recaptcha/api",
    "hcaptcha.com",
    'name="captcha',
    "captcha-challenge",
)

# Verification interstitials served by Japanese listing portals
VERIFICATION_MARKERS = (
    "認証にご協力ください",
    "アクセスが制限されています",
    "ロボットではありません",
)

TITLE_PATTERN = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


def page_title(content: str) -> str:
    match = TITLE_PATTERN.search(content)
    return match.group(1).strip() if match else ""


def detect_bot_block(content: str) -> Optional[str]:
    """
    Check whether markup is a bot-block page.

    Args:
        content: Page markup

    Returns:
        Short reason string when the page is a block, None otherwise
    """
    if not content:
        return None

    title = page_title(content)
    if "認証" in title:
        return f"verification page title: {title}"

    for marker in VERIFICATION_MARKERS:
        if marker in content:
            return f"verification marker: {marker}"

    if len(content) > MAX_CHALLENGE_PAGE_SIZE:
        return None

    lowered = content.lower()
    for marker in CHALLENGE_MARKERS:
        if marker in lowered:
            return f"challenge marker: {marker}"
    for marker in CAPTCHA_MARKERS:
        if marker in lowered:
            return f"captcha marker: {marker}"

    return None
