"""
Google Meet selectors and text cues.

Meet's markup changes often, so everything here is plain data consumed by
the generic page helpers. Nothing in this module is a stable contract.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class SelectorStrategy:
    """One way of locating an element.

    kind is one of:
    - "css": ``value`` is a CSS selector
    - "aria_regex": first button whose aria-label matches the regex ``value``
    - "icon_text": first button containing an <i> whose text equals ``value``
    """

    kind: str
    value: str


# Navigation
MEET_HOST = "meet.google.com"
SIGN_IN_URL_PREFIX = "https://accounts.google.com/"
SIGN_IN_HEADING = "Sign in"

# Pre-join
CONTINUE_WITHOUT_DEVICES_BUTTON = "Continue without microphone and camera"
NAME_INPUT = 'input[type="text"][aria-label="Your name"]'
MIC_OFF_BUTTON = "//div[@role='button' and @aria-label='Turn off microphone']"
CAMERA_OFF_BUTTON = "//div[@role='button' and @aria-label='Turn off camera']"
JOIN_BUTTON_TEXTS = ("Ask to join", "Join now", "Join anyway")

# Microphone toggles used by the synthesis path
MIC_ON_SELECTORS = (
    "//button[@aria-label='Turn on microphone']",
    "//div[@role='button' and @aria-label='Turn on microphone']",
    "//button[contains(@aria-label, 'microphone') and contains(@aria-label, 'on')]",
    "//div[@role='button' and contains(@aria-label, 'microphone') and contains(@aria-label, 'on')]",
)
MIC_OFF_SELECTORS = (
    "//button[@aria-label='Turn off microphone']",
    "//div[@role='button' and @aria-label='Turn off microphone']",
    "//button[contains(@aria-label, 'microphone') and contains(@aria-label, 'off')]",
    "//div[@role='button' and contains(@aria-label, 'microphone') and contains(@aria-label, 'off')]",
)

# Lobby and in-call evidence
PEOPLE_BUTTON = 'button[aria-label="People"]'
LEAVE_CALL_BUTTON = 'button[aria-label="Leave call"]'
BASELINE_IN_CALL_SELECTORS = (PEOPLE_BUTTON, LEAVE_CALL_BUTTON)

LOBBY_WAITING_TEXT = "Asking to be let in"
REQUEST_TIMEOUT_TEXT = "No one responded to your request to join the call"
REQUEST_DENIED_TEXT = "denied your request to join"

# Post-join
GOT_IT_BUTTON = 'button:has-text("Got it")'
GOT_IT_TEXT = "Got it"
REMOVED_FROM_MEETING_TEXT = "You've been removed from the meeting"

# Participant counter, tried in order
PEOPLE_BUTTON_CHAIN = (
    SelectorStrategy("css", 'button[aria-label^="People -"]'),
    SelectorStrategy("css", 'button[aria-label*="People"]'),
    SelectorStrategy("aria_regex", r"^People - \d+ joined$"),
    SelectorStrategy("icon_text", "people"),
)

# Matches the count embedded in the People button label, e.g. "People - 3 joined"
PEOPLE_LABEL_COUNT_PATTERN = r"People.*?(\d+)"
