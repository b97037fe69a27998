"""Input sanitization for user-supplied JSON bodies and envelope text."""

import html

from errors import ValidationError

MAX_BODY_LENGTH = 5000


def sanitize_string(value):
    """Escape HTML entities so stored text cannot inject markup."""
    if not isinstance(value, str):
        return value
    return html.escape(value, quote=True)


def sanitize_dict(data):
    """Recursively walk a dict/list structure and sanitize all string values."""
    if isinstance(data, dict):
        return {key: sanitize_dict(value) for key, value in data.items()}
    if isinstance(data, list):
        return [sanitize_dict(item) for item in data]
    if isinstance(data, str):
        return sanitize_string(data)
    return data


def clean_body(value, field="body", max_length=MAX_BODY_LENGTH):
    """Strip and length-check a free-text field, raising ValidationError."""
    if not isinstance(value, str):
        raise ValidationError("{} must be a string".format(field))
    text = value.strip()
    if not text:
        raise ValidationError("{} is required".format(field))
    if len(text) > max_length:
        raise ValidationError(
            "{} must be {} characters or fewer".format(field, max_length)
        )
    return text
