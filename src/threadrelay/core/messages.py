"""
Client-facing error messages in every supported locale.

Templates use ``{name}`` placeholders filled from the error's params.
Unknown placeholders are left as-is so a missing param is visible, not fatal.
"""

from __future__ import annotations

import re

from typing import Any

from threadrelay.core.constants import DEFAULT_LOCALE

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "INVALID_ID_FORMAT": "The {field} has an invalid format",
        "MESSAGE_TOO_LONG": "Message exceeds the maximum length of {max} characters",
        "FIELD_REQUIRED": "The {field} field is required",
        "UNSUPPORTED_IMAGE_TYPE": "Unsupported image type. Allowed types: {allowed}",
        "IMAGE_TOO_LARGE": "Image exceeds the maximum size of {max_mb} MB",
        "MSG_LIMIT_REACHED": "This conversation has reached its limit of {max} messages",
        "THREAD_NOT_FOUND": "Conversation not found",
        "FORBIDDEN": "You do not have access to this conversation",
        "DATABASE_ERROR": "A storage error occurred, please try again",
        "OPENAI_TIMEOUT": "The assistant took too long to respond, please try again",
        "OPENAI_API_ERROR": "The assistant is unavailable right now, please try again",
        "S3_UPLOAD_FAILED": "Image upload failed, please try again",
        "S3_TIMEOUT": "Image upload timed out, please try again",
        "INTERNAL_ERROR": "An unexpected error occurred",
    },
    "ar": {
        "INVALID_ID_FORMAT": "صيغة {field} غير صالحة",
        "MESSAGE_TOO_LONG": "الرسالة تتجاوز الحد الأقصى البالغ {max} حرفًا",
        "FIELD_REQUIRED": "الحقل {field} مطلوب",
        "UNSUPPORTED_IMAGE_TYPE": "نوع الصورة غير مدعوم. الأنواع المسموح بها: {allowed}",
        "IMAGE_TOO_LARGE": "حجم الصورة يتجاوز الحد الأقصى البالغ {max_mb} ميغابايت",
        "MSG_LIMIT_REACHED": "وصلت هذه المحادثة إلى الحد الأقصى البالغ {max} رسالة",
        "THREAD_NOT_FOUND": "المحادثة غير موجودة",
        "FORBIDDEN": "ليس لديك صلاحية الوصول إلى هذه المحادثة",
        "DATABASE_ERROR": "حدث خطأ في التخزين، يرجى المحاولة مرة أخرى",
        "OPENAI_TIMEOUT": "استغرق المساعد وقتًا طويلاً للرد، يرجى المحاولة مرة أخرى",
        "OPENAI_API_ERROR": "المساعد غير متاح حاليًا، يرجى المحاولة مرة أخرى",
        "S3_UPLOAD_FAILED": "فشل رفع الصورة، يرجى المحاولة مرة أخرى",
        "S3_TIMEOUT": "انتهت مهلة رفع الصورة، يرجى المحاولة مرة أخرى",
        "INTERNAL_ERROR": "حدث خطأ غير متوقع",
    },
}


def get_message(code: str, params: dict[str, Any] | None = None, locale: str = DEFAULT_LOCALE) -> str:
    """Look up and interpolate the message for an error code.

    Falls back to English, then to the code itself.
    """
    catalogue = MESSAGES.get(locale, MESSAGES[DEFAULT_LOCALE])
    template = catalogue.get(code) or MESSAGES[DEFAULT_LOCALE].get(code) or code
    if not params:
        return template

    def _sub(match: re.Match[str]) -> str:
        value = params.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template)
