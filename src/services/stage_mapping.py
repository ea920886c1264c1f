"""
Stage mapping - GoHighLevel stage names <-> super stages.

Every clinic names its CRM stages slightly differently, so everything here
works on names (case-insensitive, trimmed), never on stage ids.

Forward:  get_super_stage_by_name("Closing Call") -> "closing"
Inverse:  resolve_stage_id(stages, "closing") -> CRM stage id, in two tiers:
          1. preferred display names for the super stage, in order
          2. any stage whose name maps forward to the super stage
"""
from typing import Iterable, Optional

SUPER_STAGES = ("virtual", "in_person", "tx_plan", "closing", "financing", "won", "archive")

STAGE_LABELS = {
    "virtual": "Virtual",
    "in_person": "In-Person",
    "tx_plan": "TX Plan",
    "closing": "Closing",
    "financing": "Financing",
    "won": "Won",
    "archive": "Archive",
}

# Super stages with no CRM counterpart in some clinics. Moving a card here is
# complete once recorded locally.
LOCAL_ONLY_STAGES = frozenset({"archive"})

STAGE_NAME_TO_SUPER: dict[str, str] = {
    # Virtual
    "virtual": "virtual",
    "virtual consult": "virtual",
    "virtual show": "virtual",
    "approved virtual": "virtual",
    # In-Person
    "in office": "in_person",
    "office appt": "in_person",
    "office show": "in_person",
    "office consult": "in_person",
    "confirmation (day before appt)": "in_person",
    "confirmation (2 days out)": "in_person",
    "confirmation (4 days out)": "in_person",
    "confirmed": "in_person",
    "future appointment": "in_person",
    "future appointments": "in_person",
    # TX Plan
    "tx plan ready": "tx_plan",
    "proposal sent": "tx_plan",
    "agreement sent": "tx_plan",
    # Closing
    "closing call": "closing",
    "negotiation": "closing",
    "signed": "closing",
    # Financing
    "finance link sent": "financing",
    "approved": "financing",
    "pp processing": "financing",
    "pp approved": "financing",
    "cash patient": "financing",
    "finance option yes": "financing",
    "patient preferred link": "financing",
    "eligible": "financing",
    # Won (down payment received)
    "down payment": "won",
    "won": "won",
    "closed": "won",
    "sold": "won",
    # Archive (cold, revivable)
    "delayed follow up": "archive",
    "re engage": "archive",
    "re-engage": "archive",
    "limbo": "archive",
    "rescheduled": "archive",
}

# Checked before STAGE_NAME_TO_SUPER: lost, too early, or already post-close
EXCLUDED_STAGE_NAMES = frozenset({
    # Lost / stalled
    "lost", "not interested", "fico dnq", "pp dnq", "un qualified",
    "no show", "no show oc", "no show cc",
    # Too early
    "activated", "new lead from lp", "new lead", "lead created", "un scheduled",
    # Post-close
    "smile design", "financials completed", "pre surgery", "surgery",
    "surgery completed", "after care", "recall", "testimonial",
    "uncategorized",
})

# Preferred CRM display names per super stage, first match wins
SUPER_TO_TARGET_STAGES: dict[str, tuple[str, ...]] = {
    "virtual": ("Virtual Consult", "Virtual", "Virtual Show"),
    "in_person": ("Office Appt", "In Office", "Office Show", "Confirmed"),
    "tx_plan": ("TX Plan Ready", "Proposal Sent", "Agreement Sent"),
    "closing": ("Closing Call", "Negotiation"),
    "financing": ("Finance Link Sent", "Approved", "PP Processing", "Cash Patient"),
    "won": ("Signed", "Down Payment", "Won", "Closed"),
    "archive": ("Delayed Follow Up", "Re Engage", "Limbo"),
}


def normalize_stage_name(name: Optional[str]) -> str:
    return (name or "").strip().lower()


def is_super_stage(value: Optional[str]) -> bool:
    return value in SUPER_STAGES


def is_local_only(super_stage: str) -> bool:
    return super_stage in LOCAL_ONLY_STAGES


def get_super_stage_by_name(stage_name: Optional[str]) -> Optional[str]:
    """Map a CRM stage name to its super stage. Excluded or unknown names -> None."""
    normalized = normalize_stage_name(stage_name)
    if normalized in EXCLUDED_STAGE_NAMES:
        return None
    return STAGE_NAME_TO_SUPER.get(normalized)


def target_stage_names(super_stage: str) -> tuple[str, ...]:
    """Ordered preferred CRM stage names for a super stage (empty if unknown)."""
    return SUPER_TO_TARGET_STAGES.get(super_stage, ())


def resolve_stage_id(stages: Iterable[dict], super_stage: str) -> Optional[str]:
    """
    Find the CRM stage id to write for a super stage.

    stages: the tracked pipeline's stage list ([{"id": ..., "name": ...}]).
    Tier 1 walks the preferred names in priority order; tier 2 scans the
    pipeline for any stage that maps forward to the super stage.
    """
    stages = [s for s in stages if s.get("id")]
    by_name: dict[str, str] = {}
    for stage in stages:
        by_name.setdefault(normalize_stage_name(stage.get("name")), stage["id"])

    for candidate in target_stage_names(super_stage):
        stage_id = by_name.get(normalize_stage_name(candidate))
        if stage_id:
            return stage_id

    for stage in stages:
        if get_super_stage_by_name(stage.get("name")) == super_stage:
            return stage["id"]

    return None
