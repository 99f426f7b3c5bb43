"""Credit cost table, balance thresholds, and per-task cost helpers.

Credits represent AI labor performed by Kai, not user actions.
"""

# Per-operation costs charged by the credit router
CREDIT_COSTS: dict[str, int] = {
    "KAI_CHAT": 1,  # per message
    "SMS": 1,  # per SMS
    "EMAIL": 2,  # per email
    "CALL_PER_MINUTE": 10,  # per minute of call
}

CREDIT_THRESHOLDS: dict[str, int] = {
    "WARNING": 50,  # show warning below this
    "CRITICAL": 10,  # show critical alert below this
    "BLOCKING": 0,  # block operations at this level
}

# Costs per AI task type, including the ranged tasks
TASK_CREDIT_COSTS: dict[str, int] = {
    "KAI_CHAT": 1,
    "AI_SMS": 1,
    "AI_EMAIL": 2,
    "AI_PHONE_CALL_MIN": 8,
    "AI_PHONE_CALL_MAX": 15,
    "AI_PHONE_CALL_AVG": 12,
    "AUTOMATION_MIN": 5,
    "AUTOMATION_MAX": 10,
    "AUTOMATION_AVG": 7,
    "DATA_ANALYSIS": 3,
}

_CALL_BASE_SECONDS = 120
_CALL_CAP_SECONDS = 600
_AUTOMATION_BASE_STEPS = 3
_AUTOMATION_CAP_STEPS = 10


def calculate_phone_call_credits(duration_seconds: float) -> int:
    """Credit cost of an AI phone call, scaled by duration.

    8 credits up to two minutes, rising linearly to 15 credits at ten
    minutes, capped at 15 beyond that.
    """
    low = TASK_CREDIT_COSTS["AI_PHONE_CALL_MIN"]
    high = TASK_CREDIT_COSTS["AI_PHONE_CALL_MAX"]

    if duration_seconds <= _CALL_BASE_SECONDS:
        return low
    if duration_seconds <= _CALL_CAP_SECONDS:
        ratio = (duration_seconds - _CALL_BASE_SECONDS) / (_CALL_CAP_SECONDS - _CALL_BASE_SECONDS)
        return min(low + int(ratio * (high - low)), high)
    return high


def calculate_automation_credits(step_count: int) -> int:
    """Credit cost of an automation sequence, scaled by step count (5-10)."""
    low = TASK_CREDIT_COSTS["AUTOMATION_MIN"]
    high = TASK_CREDIT_COSTS["AUTOMATION_MAX"]

    if step_count <= _AUTOMATION_BASE_STEPS:
        return low
    if step_count <= _AUTOMATION_CAP_STEPS:
        ratio = (step_count - _AUTOMATION_BASE_STEPS) / (
            _AUTOMATION_CAP_STEPS - _AUTOMATION_BASE_STEPS
        )
        return min(low + int(ratio * (high - low)), high)
    return high


def get_credit_cost_description(task_type: str) -> str:
    """Human-readable cost of a task type."""
    costs = TASK_CREDIT_COSTS
    descriptions = {
        "kai_chat": f"{costs['KAI_CHAT']} credit per response",
        "ai_sms": f"{costs['AI_SMS']} credit per message",
        "ai_email": f"{costs['AI_EMAIL']} credits per email",
        "ai_phone_call": f"{costs['AI_PHONE_CALL_MIN']}-{costs['AI_PHONE_CALL_MAX']} credits per call",
        "automation": f"{costs['AUTOMATION_MIN']}-{costs['AUTOMATION_MAX']} credits per sequence",
        "data_analysis": f"{costs['DATA_ANALYSIS']} credits per report",
    }
    return descriptions.get(task_type, "Variable cost")
