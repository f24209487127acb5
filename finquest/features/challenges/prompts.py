"""Prompt construction for LLM-backed challenge generation.

The prompt asks for a strict JSON array; the generator never trusts the
output and validates each element before use.
"""

import json
from datetime import datetime, timedelta
from typing import Optional

SYSTEM_PROMPT = (
    "You are a personal-finance coach who designs short gamified challenges. "
    "You answer ONLY with a JSON array, no prose, no markdown fences."
)

CHALLENGE_TYPE_GUIDE = {
    "savings": "Save (receive as income) a target amount within the window.",
    "spending_limit": "Keep total spending, optionally in one category, at or under a target amount.",
    "category_ban": "Do not spend at all in one category during the window.",
    "streak": "Go streak_days consecutive days without spending in one category.",
    "goal_contribution": "Bring an existing savings goal (goal_id) up to a target balance.",
    "income_percentage": "Set aside a percentage of income; target_amount is that share of income.",
}

RULE_GUIDE = {
    "savings": {"target_amount": "int"},
    "spending_limit": {"target_amount": "int", "category": "string or null"},
    "category_ban": {"category": "string"},
    "streak": {"category": "string", "streak_days": "int >= 1"},
    "goal_contribution": {"goal_id": "one of the user's goal ids", "target_amount": "int"},
    "income_percentage": {"percentage": "number in (0, 100]", "target_amount": "int"},
}

POINTS_GUIDE = "easy: 25-50, medium: 50-100, hard: 100-200"


def build_generation_prompt(
    context: dict,
    count: int,
    now: datetime,
    difficulty: Optional[str] = None,
    frequency: Optional[str] = None,
) -> str:
    example_end = now + timedelta(days=7)
    example = [
        {
            "type": "spending_limit",
            "difficulty": "medium",
            "frequency": "weekly",
            "title": "Mindful week",
            "description": "Keep delivery spending under control this week.",
            "rules": {"target_amount": 50000, "category": "delivery"},
            "reward_points": 75,
            "start_date": now.isoformat(),
            "end_date": example_end.isoformat(),
        }
    ]
    lines = [
        f"Generate exactly {count} personalized financial challenges for this user.",
        "",
        "User data:",
        json.dumps(context, indent=2, sort_keys=True, default=str),
        "",
        "Challenge types:",
    ]
    for name, guide in CHALLENGE_TYPE_GUIDE.items():
        lines.append(f"- {name}: {guide} rules={json.dumps(RULE_GUIDE[name])}")
    lines += [
        "",
        f"Difficulty: {difficulty or 'choose per challenge'}",
        f"Frequency: {frequency or 'choose per challenge'}",
        f"Reward points by difficulty: {POINTS_GUIDE}",
        "Amounts are integers in the smallest currency unit.",
        "Dates are ISO-8601 with timezone and must match the frequency.",
        "Only use goal_contribution with a goal id listed in the user data.",
        "",
        "Respond with a JSON array shaped like:",
        json.dumps(example, indent=2),
    ]
    return "\n".join(lines)
