import re

_PHONE = re.compile(r"(?<!\d)(?:\+92|0)?\d{10,11}(?!\d)")
_EMAIL = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
# Pakistani national ID (CNIC): 12345-1234567-1
_CNIC = re.compile(r"\b\d{5}-\d{7}-\d\b")


def redact_pii(text: str) -> tuple[str, int]:
    """Mask phone numbers, emails and CNICs; returns the text and how many were masked."""
    count = 0
    for pattern, label in ((_CNIC, "[CNIC_REDACTED]"), (_EMAIL, "[EMAIL_REDACTED]"), (_PHONE, "[PHONE_REDACTED]")):
        text, n = pattern.subn(label, text)
        count += n
    return text, count
