"""Placeholder substitution for follow-up templates.

``render`` never touches the network or the store; identical inputs always
produce identical output.
"""

import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional

_PLACEHOLDER_RE = re.compile(r"\{([a-z_]+)\}")


def format_money(value: Optional[float]) -> str:
    if not value:
        return "$0"
    number = float(value)
    if number.is_integer():
        return f"${int(number)}"
    return f"${number:.2f}"


def format_date(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return f"{value.month}/{value.day}/{value.year}"


def format_deadline(value: Any) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, datetime):
        return f"{value:%B} {value.day}"
    return str(value)


def _text(value: Any, default: str) -> str:
    if not value:
        return default
    return str(value)


def _program_name(lead) -> str:
    return _text(lead.workout_program_name or lead.ensemble_program_name, "our program")


PLACEHOLDERS: Dict[str, Callable[[Any], str]] = {
    "director_first_name": lambda lead: _text(lead.director_first_name, "there"),
    "director_last_name": lambda lead: _text(lead.director_last_name, ""),
    "workout_program_name": _program_name,
    "school_name": lambda lead: _text(lead.school_name, "your organization"),
    "estimated_performers": lambda lead: _text(lead.estimated_performers, "your group"),
    "ensemble_program_name": lambda lead: _text(lead.ensemble_program_name, "your ensemble program"),
    "director_email": lambda lead: _text(lead.director_email, ""),
    "director_phone_number": lambda lead: _text(lead.director_phone_number, ""),
    "discount_rate_dr": lambda lead: format_money(lead.discount_rate_dr),
    "standard_rate_sr": lambda lead: format_money(lead.standard_rate_sr),
    "savings": lambda lead: format_money(lead.savings),
    "early_bird_deadline": lambda lead: format_deadline(lead.early_bird_deadline) or "soon",
    "season": lambda lead: _text(lead.season, "this season"),
    "quickbooks_customer_id": lambda lead: _text(lead.quickbooks_customer_id, "N/A"),
    "quickbooks_invoice_id": lambda lead: _text(lead.quickbooks_invoice_id, "N/A"),
    "quickbooks_invoice_number": lambda lead: _text(lead.quickbooks_invoice_number, "N/A"),
    "payment_status": lambda lead: _text(lead.invoice_status, "pending"),
    "status": lambda lead: _text(lead.status, "New Lead"),
    "form_submission_date": lambda lead: format_date(lead.form_submission_date) or "recently",
}


def render(template: str, lead) -> str:
    """Substitute every known ``{placeholder}`` in ``template`` from ``lead``.

    Unknown placeholders are left as-is so operators can spot typos in the
    rendered output.
    """
    if not template:
        return ""

    def _replace(match: "re.Match[str]") -> str:
        resolver = PLACEHOLDERS.get(match.group(1))
        if resolver is None:
            return match.group(0)
        return resolver(lead)

    return _PLACEHOLDER_RE.sub(_replace, template)
