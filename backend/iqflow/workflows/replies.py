# /iqflow/workflows/replies.py

# Reply parsers turn free text typed at a waiting step into context updates.
# Returning None means the text was not understood and the flow stays put.

import re
from typing import Any, Callable, Dict, List, Optional

EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
OTP_PATTERN = re.compile(r"\b(\d{6})\b")

_YES = re.compile(r"\b(y|yes|yeah|yep|sure|ok|okay|continue|create)\b", re.IGNORECASE)
_NO = re.compile(r"\b(n|no|nope|not now|later|skip)\b", re.IGNORECASE)
# A negated verb ("don't create an account") is a no, whatever else it says.
_NEGATION = re.compile(r"\b(?:don['’]?t|do not|never|no thanks)\b", re.IGNORECASE)


def yes_no(key: str) -> Callable[[str], Optional[Dict[str, Any]]]:
    """Builds a parser that stores True/False under `key` for yes/no answers."""
    def parse(text: str) -> Optional[Dict[str, Any]]:
        if _NEGATION.search(text):
            return {key: False}
        said_yes = bool(_YES.search(text))
        said_no = bool(_NO.search(text))
        if said_yes == said_no:
            return None
        return {key: said_yes}
    return parse


def parse_mode(text: str) -> Optional[Dict[str, Any]]:
    lowered = text.lower()
    if "demo" in lowered and "live" not in lowered:
        return {"mode": "demo"}
    if "live" in lowered and "demo" not in lowered:
        return {"mode": "live"}
    return None


def parse_channel_choice(text: str) -> Optional[Dict[str, Any]]:
    lowered = text.lower()
    if "configure" in lowered:
        return {"configureChannels": True}
    if "skip" in lowered or "default" in lowered:
        return {"configureChannels": False}
    return None


def parse_data_ready(text: str) -> Optional[Dict[str, Any]]:
    if re.search(r"\b(done|ready|sending)\b", text, re.IGNORECASE):
        return {"dataSending": True}
    return None


def parse_otp(text: str) -> Optional[Dict[str, Any]]:
    match = OTP_PATTERN.search(text)
    return {"otp": match.group(1)} if match else None


def parse_email(text: str) -> Optional[Dict[str, Any]]:
    match = EMAIL_PATTERN.search(text)
    return {"email": match.group(0).lower()} if match else None


def extract_invitees(text: str, role: str = "Viewer") -> List[Dict[str, str]]:
    """Turns 'a@x.com, b@y.com' into invitation records named after the mailbox."""
    return [
        {"name": email.split("@")[0], "email": email, "role": role}
        for email in EMAIL_PATTERN.findall(text)
    ]


def parse_invitees(text: str) -> Optional[Dict[str, Any]]:
    users = extract_invitees(text)
    return {"invitedUsers": users} if users else None
