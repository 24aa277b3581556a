"""
Log sanitization for user-supplied values.

Message bodies and phone numbers arrive from HTTP callers and from the
messaging network; both are stripped of control characters before they
reach a log line, and phone numbers are masked.

Usage:
    from session_gateway.core.secure_logging import sanitize_for_log, mask_phone_number

    logger.info(f"Sending to {mask_phone_number(number)}: {sanitize_for_log(text, 30)}")
"""

import re

_CONTROL_CHAR_RE = re.compile(r'[\x00-\x1f\x7f]')
_DIGIT_RE = re.compile(r'\d')


def sanitize_for_log(val, max_len: int = 200) -> str:
    """Strip control characters and truncate to ``max_len``.

    A trailing ``...`` marks truncation so operators can tell a short
    message from a clipped one.
    """
    cleaned = _CONTROL_CHAR_RE.sub('', str(val))
    if len(cleaned) > max_len:
        return cleaned[:max_len] + '...'
    return cleaned


def mask_phone_number(val, visible_suffix: int = 4) -> str:
    """Mask every digit except the last ``visible_suffix`` ones.

    ``15551234567@c.us`` becomes ``*******4567@c.us``.
    """
    s = sanitize_for_log(val, max_len=64)
    total = len(_DIGIT_RE.findall(s))
    if total <= visible_suffix:
        return '****'
    to_mask = total - visible_suffix
    out = []
    for ch in s:
        if to_mask > 0 and ch.isdigit():
            out.append('*')
            to_mask -= 1
        else:
            out.append(ch)
    return ''.join(out)
