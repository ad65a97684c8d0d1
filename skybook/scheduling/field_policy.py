"""
Booking form field policy.

A per-(field, role) table saying whether a field is required and/or
visible. Pure lookup, no side effects. The table is data: administrators
tighten or relax it through FieldSetting rows, not code.

Lookup rules (per field setting):
  no setting for the field      → visible, not required
  setting hidden                → not visible, not required
  role not in applies_to_roles  → not visible, not required
  otherwise                     → visible, required = is_required
"""
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from skybook.config import OVERRIDE_ROLES
from skybook.scheduling.entities import PaymentType, Role


ALL_ROLES = (Role.ADMIN.value, Role.INSTRUCTOR.value, Role.STUDENT.value)

# Booking form fields the policy can govern, mapped to BookingRequest attributes
BOOKING_FIELDS = {
    "student_id": "student_id",
    "instructor_id": "instructor_id",
    "aircraft_id": "aircraft_id",
    "start_time": "start",
    "end_time": "end",
    "payment_type": "payment_type",
    "notes": "notes",
}


@dataclass(frozen=True)
class FieldSetting:
    field_name: str
    label: str = ""
    is_required: bool = False
    is_visible: bool = True
    applies_to_roles: tuple = ALL_ROLES
    display_order: int = 0
    help_text: Optional[str] = None


@dataclass(frozen=True)
class FieldRule:
    required: bool = False
    visible: bool = True


# Mirrors the stock booking form: students never pick an instructor themselves
DEFAULT_FIELD_SETTINGS = (
    FieldSetting("student_id", "Pilot / Student", True, True, ALL_ROLES, 1),
    FieldSetting("aircraft_id", "Aircraft", True, True, ALL_ROLES, 2),
    FieldSetting("start_time", "Start", True, True, ALL_ROLES, 3),
    FieldSetting("end_time", "End", True, True, ALL_ROLES, 4),
    FieldSetting("instructor_id", "Instructor", False, True,
                 (Role.ADMIN.value, Role.INSTRUCTOR.value), 5),
    FieldSetting("payment_type", "Payment type", True, True, ALL_ROLES, 6),
    FieldSetting("notes", "Notes", False, True, ALL_ROLES, 7),
)


def _role_value(role) -> str:
    return role.value if isinstance(role, Role) else str(role)


@dataclass
class FieldPolicy:
    settings: dict = field(default_factory=dict)          # field_name → FieldSetting
    override_roles: tuple = OVERRIDE_ROLES

    @classmethod
    def from_settings(cls, rows: Iterable, override_roles: tuple = OVERRIDE_ROLES) -> "FieldPolicy":
        """
        Build from FieldSetting values or anything with the same attributes
        (ORM rows, pydantic models).
        """
        settings = {}
        for r in rows:
            settings[r.field_name] = FieldSetting(
                field_name=r.field_name,
                label=r.label or "",
                is_required=bool(r.is_required),
                is_visible=bool(r.is_visible),
                applies_to_roles=tuple(r.applies_to_roles or ()),
                display_order=r.display_order or 0,
                help_text=r.help_text,
            )
        return cls(settings=settings, override_roles=tuple(override_roles))

    @classmethod
    def default(cls) -> "FieldPolicy":
        return cls.from_settings(DEFAULT_FIELD_SETTINGS)

    # ── Lookups ──────────────────────────────────────────────────────────────

    def rule_for(self, field_name: str, role) -> FieldRule:
        setting = self.settings.get(field_name)
        if setting is None:
            return FieldRule(required=False, visible=True)
        if not setting.is_visible or _role_value(role) not in setting.applies_to_roles:
            return FieldRule(required=False, visible=False)
        return FieldRule(required=setting.is_required, visible=True)

    def is_field_required(self, field_name: str, role) -> bool:
        return self.rule_for(field_name, role).required

    def is_field_visible(self, field_name: str, role) -> bool:
        return self.rule_for(field_name, role).visible

    def required_fields(self, role) -> list[str]:
        ordered = sorted(self.settings.values(), key=lambda s: (s.display_order, s.field_name))
        return [s.field_name for s in ordered if self.is_field_required(s.field_name, role)]

    def can_override_conflicts(self, role) -> bool:
        """Only these roles may book through scheduling conflicts."""
        return _role_value(role) in self.override_roles

    # ── Administration ───────────────────────────────────────────────────────

    def override(self, field_name: str, **changes) -> "FieldPolicy":
        """
        Return a new policy with one setting changed (or added).
        e.g. policy.override("instructor_id", is_required=True)
        """
        current = self.settings.get(field_name, FieldSetting(field_name=field_name))
        if "applies_to_roles" in changes:
            changes["applies_to_roles"] = tuple(changes["applies_to_roles"])
        settings = dict(self.settings)
        settings[field_name] = replace(current, **changes)
        return FieldPolicy(settings=settings, override_roles=self.override_roles)

    # ── Defaulting ───────────────────────────────────────────────────────────

    def apply_defaults(self, request, role, actor_id: Optional[str] = None):
        """
        Resolve form defaults before validation:
          - payment type falls back to prepaid
          - a student's booking is for themselves
        """
        changes = {}
        if not request.payment_type:
            changes["payment_type"] = PaymentType.PREPAID.value
        if _role_value(role) == Role.STUDENT.value and not request.student_id and actor_id:
            changes["student_id"] = actor_id
        return replace(request, **changes) if changes else request

    def to_list(self) -> list[dict]:
        ordered = sorted(self.settings.values(), key=lambda s: (s.display_order, s.field_name))
        return [
            {
                "field_name": s.field_name,
                "label": s.label,
                "is_required": s.is_required,
                "is_visible": s.is_visible,
                "applies_to_roles": list(s.applies_to_roles),
                "display_order": s.display_order,
                "help_text": s.help_text,
            }
            for s in ordered
        ]
