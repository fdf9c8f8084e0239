"""
Follow-up message templates - {variable} substitution over lead/contact fields.
Unknown variables are left in place as "{name}" rather than raising.
"""
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class SafeDict(dict):
    """Dict that returns '{key}' for missing keys instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def build_template_context(lead, contact=None, org_name: Optional[str] = None) -> dict[str, Any]:
    """Variables available to follow-up templates."""
    first_name = (contact.first_name if contact else None) or "there"
    last_name = (contact.last_name if contact else None) or ""
    return {
        "first_name": first_name,
        "last_name": last_name,
        "full_name": f"{first_name} {last_name}".strip(),
        "practice_area": lead.practice_area or "your matter",
        "lead_status": lead.status,
        "firm_name": org_name or "our office",
    }


def render_template(text: str, context: dict[str, Any]) -> str:
    """Substitute variables. A malformed template is returned unrendered."""
    try:
        return text.format_map(SafeDict(context))
    except (ValueError, IndexError, AttributeError) as e:
        logger.warning("Template rendering failed, sending raw text: %s", str(e))
        return text
