"""Challenge generation: LLM-backed drafts with a deterministic fallback.

The content model gets a structured prompt and must answer with a JSON array.
Every element is validated; if anything about the answer is off (model error,
timeout, missing array, bad enum, non-numeric amount, rules that do not fit
the type) the whole answer is discarded and drafts come from FALLBACK_TEMPLATES
instead. Generation never raises to the caller.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from groq import Groq

from finquest.core.errors import GenerationFailure, InvalidRuleError
from finquest.core.logging import log_event
from finquest.core.metrics import challenge_drafts_generated_total
from finquest.core.tracing import start_span
from finquest.features.challenges.prompts import SYSTEM_PROMPT, build_generation_prompt
from finquest.features.challenges.validators import default_window, parse_draft
from finquest.models.challenge import RULE_FIELDS, ChallengeDraft, utc_now
from finquest.models.goal import SavingsGoal
from finquest.models.transaction import Transaction

logger = logging.getLogger("finquest.challenges.generator")

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

DEFAULT_REWARD_BY_DIFFICULTY = {"easy": 50, "medium": 75, "hard": 150}


class ContentModel(Protocol):
    def complete(self, prompt: str) -> str: ...


class GroqContentModel:
    """Content model backed by the Groq chat completions API."""

    def __init__(self, api_key: str, model: str, temperature: float = 0.7, timeout: float = 20.0):
        self._client = Groq(api_key=api_key, timeout=timeout)
        self._model = model
        self._temperature = temperature

    def complete(self, prompt: str) -> str:
        response = self._client.chat.completions.create(
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            model=self._model,
            temperature=self._temperature,
            max_tokens=2048,
        )
        return response.choices[0].message.content or ""


# ---------------------------------------------------------------------------
# User context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GoalSummary:
    id: str
    name: str
    target_amount: int
    current_amount: int


@dataclass(frozen=True)
class UserContext:
    """What the generator knows about a user. Built by the caller, never fetched here."""

    user_id: str
    lookback_days: int = 30
    goals: Tuple[GoalSummary, ...] = ()
    income_total: int = 0
    income_count: int = 0
    expense_total: int = 0
    expense_count: int = 0
    expense_by_category: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def from_activity(
        cls,
        user_id: str,
        transactions: Iterable[Transaction],
        goals: Iterable[SavingsGoal] = (),
        lookback_days: int = 30,
    ) -> "UserContext":
        income_total = income_count = expense_total = expense_count = 0
        by_category: Dict[str, int] = {}
        for txn in transactions:
            if txn.type == "income":
                income_total += txn.amount
                income_count += 1
            else:
                expense_total += txn.amount
                expense_count += 1
                by_category[txn.category] = by_category.get(txn.category, 0) + txn.amount
        return cls(
            user_id=user_id,
            lookback_days=lookback_days,
            goals=tuple(
                GoalSummary(id=g.id, name=g.name, target_amount=g.target_amount, current_amount=g.current_amount)
                for g in goals
            ),
            income_total=income_total,
            income_count=income_count,
            expense_total=expense_total,
            expense_count=expense_count,
            expense_by_category=by_category,
        )

    @property
    def income_average(self) -> float:
        return self.income_total / self.income_count if self.income_count else 0.0

    @property
    def expense_average(self) -> float:
        return self.expense_total / self.expense_count if self.expense_count else 0.0

    def weekly(self, total: int) -> int:
        return round(total * 7 / max(self.lookback_days, 1))

    def top_category(self) -> Optional[str]:
        if not self.expense_by_category:
            return None
        return sorted(self.expense_by_category.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]

    def to_prompt_dict(self) -> Dict[str, Any]:
        return {
            "lookback_days": self.lookback_days,
            "goals": [g.__dict__ for g in self.goals],
            "income": {"total": self.income_total, "average": round(self.income_average, 2), "count": self.income_count},
            "expenses": {
                "total": self.expense_total,
                "average": round(self.expense_average, 2),
                "count": self.expense_count,
                "by_category": dict(sorted(self.expense_by_category.items())),
            },
        }


# ---------------------------------------------------------------------------
# Fallback templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FallbackTemplate:
    type: str
    difficulty: str
    frequency: str
    title: str
    description: str
    reward_points: int
    # Returns None when the template does not apply to this user
    rules: Callable[[UserContext], Optional[Dict[str, Any]]]


def _spending_rules(ctx: UserContext) -> Dict[str, Any]:
    weekly = ctx.weekly(ctx.expense_total)
    return {"target_amount": max(round(weekly * 0.9), 1) if weekly else 50000}


def _savings_rules(ctx: UserContext) -> Dict[str, Any]:
    weekly = ctx.weekly(ctx.income_total)
    return {"target_amount": max(round(weekly * 0.1), 1) if weekly else 20000}


def _ban_rules(ctx: UserContext) -> Dict[str, Any]:
    return {"category": ctx.top_category() or "delivery"}


def _streak_rules(ctx: UserContext) -> Dict[str, Any]:
    return {"category": ctx.top_category() or "delivery", "streak_days": 5}


def _income_rules(ctx: UserContext) -> Optional[Dict[str, Any]]:
    if not ctx.income_count:
        return None
    target = round(ctx.income_average * 10 / 100)
    return {"percentage": 10, "target_amount": target} if target > 0 else None


def _goal_rules(ctx: UserContext) -> Optional[Dict[str, Any]]:
    for goal in ctx.goals:
        if goal.current_amount < goal.target_amount:
            step = max(goal.target_amount // 10, 1)
            return {"goal_id": goal.id, "target_amount": min(goal.current_amount + step, goal.target_amount)}
    return None


FALLBACK_TEMPLATES: Tuple[FallbackTemplate, ...] = (
    FallbackTemplate("spending_limit", "easy", "weekly", "Mindful spending week",
                     "Keep this week's total spending under the limit.", 50, _spending_rules),
    FallbackTemplate("savings", "medium", "weekly", "Weekly savings sprint",
                     "Put aside the target amount before the week ends.", 75, _savings_rules),
    FallbackTemplate("category_ban", "hard", "weekly", "A week without your top expense",
                     "Spend nothing in this category for seven days.", 100, _ban_rules),
    FallbackTemplate("streak", "medium", "weekly", "Five clean days",
                     "Go five days in a row without spending in this category.", 75, _streak_rules),
    FallbackTemplate("income_percentage", "medium", "monthly", "Pay yourself first",
                     "Set aside ten percent of your income this month.", 100, _income_rules),
    FallbackTemplate("goal_contribution", "easy", "weekly", "Feed your goal",
                     "Move your savings goal one step closer this week.", 50, _goal_rules),
)


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class ChallengeGenerator:
    """Produces challenge drafts for a user; falls back to templates on any model failure."""

    def __init__(self, content_model: Optional[ContentModel] = None):
        self._model = content_model

    def generate(
        self,
        context: UserContext,
        count: int,
        difficulty_hint: Optional[str] = None,
        frequency_hint: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ChallengeDraft]:
        now = now or utc_now()
        if count <= 0:
            return []

        with start_span("challenges.generate", {"user_id": context.user_id, "count": count}):
            drafts: List[ChallengeDraft] = []
            if self._model is not None:
                try:
                    drafts = self._from_model(context, count, difficulty_hint, frequency_hint, now)
                except GenerationFailure as exc:
                    log_event(
                        "warning",
                        "challenge.generation_fallback",
                        user_id=context.user_id,
                        event_type="generation",
                        error_code=exc.code,
                        extra={"reason": exc.message},
                    )
                    drafts = []
            if drafts:
                challenge_drafts_generated_total.inc({"provenance": "generated"}, amount=len(drafts))

            missing = count - len(drafts)
            if missing > 0:
                extra = fallback_drafts(context, missing, difficulty_hint, frequency_hint, now)
                challenge_drafts_generated_total.inc({"provenance": "fallback"}, amount=len(extra))
                drafts = drafts + extra
            return drafts

    def _from_model(
        self,
        context: UserContext,
        count: int,
        difficulty_hint: Optional[str],
        frequency_hint: Optional[str],
        now: datetime,
    ) -> List[ChallengeDraft]:
        prompt = build_generation_prompt(context.to_prompt_dict(), count, now, difficulty_hint, frequency_hint)
        try:
            text = self._model.complete(prompt)
        except Exception as exc:
            # Any transport, timeout or SDK error from the model degrades to templates
            logger.warning("content model call failed", exc_info=True)
            raise GenerationFailure(f"content model call failed: {exc}") from exc
        try:
            return parse_model_output(text, context, count, now, generation_context=prompt)
        except (TypeError, ValueError) as exc:
            raise GenerationFailure(f"model output has an unexpected shape: {exc}") from exc


def parse_model_output(
    text: str,
    context: UserContext,
    count: int,
    now: datetime,
    generation_context: Optional[str] = None,
) -> List[ChallengeDraft]:
    """Strictly parse a model answer into drafts. Raises GenerationFailure on any defect."""
    match = _JSON_ARRAY_RE.search(text or "")
    if not match:
        raise GenerationFailure("no JSON array in model output")
    try:
        items = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise GenerationFailure(f"model output is not valid JSON: {exc.msg}") from exc
    if not isinstance(items, list) or not items:
        raise GenerationFailure("model output is an empty array")

    goal_ids = {g.id for g in context.goals}
    drafts = []
    for index, item in enumerate(items[:count]):
        if not isinstance(item, dict):
            raise GenerationFailure(f"element {index} is not an object")
        payload = _normalize_item(item, context, now)
        goal_id = payload["rules"].get("goal_id")
        if payload["type"] == "goal_contribution" and (not isinstance(goal_id, str) or goal_id not in goal_ids):
            raise GenerationFailure(f"element {index} references an unknown goal")
        payload["provenance"] = "generated"
        payload["generation_context"] = generation_context
        try:
            drafts.append(parse_draft(payload))
        except InvalidRuleError as exc:
            raise GenerationFailure(f"element {index} is invalid: {exc.message}") from exc
    return drafts


def fallback_drafts(
    context: UserContext,
    count: int,
    difficulty_hint: Optional[str] = None,
    frequency_hint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[ChallengeDraft]:
    """Deterministic drafts rotated from a per-user, per-day offset."""
    now = now or utc_now()
    applicable = [(t, t.rules(context)) for t in FALLBACK_TEMPLATES]
    applicable = [(t, rules) for t, rules in applicable if rules is not None]
    offset = _deterministic_index(context.user_id, now, len(applicable))

    drafts = []
    for i in range(count):
        template, rules = applicable[(offset + i) % len(applicable)]
        frequency = frequency_hint or template.frequency
        start, end = default_window(frequency, None, now)
        drafts.append(
            parse_draft(
                {
                    "type": template.type,
                    "difficulty": difficulty_hint or template.difficulty,
                    "frequency": frequency,
                    "title": template.title,
                    "description": template.description,
                    "rules": rules,
                    "reward_points": template.reward_points,
                    "start_date": start,
                    "end_date": end,
                    "provenance": "fallback",
                }
            )
        )
    return drafts


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _deterministic_index(user_id: str, now: datetime, size: int) -> int:
    seed = f"{user_id}:{now.date().isoformat()}"
    return int(hashlib.sha256(seed.encode()).hexdigest(), 16) % size


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def _enum_text(data: Mapping[str, Any], key: str, default: Optional[str] = None) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return default
    if not isinstance(value, str):
        raise GenerationFailure(f"{key} is not a string: {value!r}")
    return value.strip().lower() or default


def _normalize_item(item: Mapping[str, Any], context: UserContext, now: datetime) -> Dict[str, Any]:
    data = {_snake(k): v for k, v in item.items()}
    ctype = _enum_text(data, "type")
    if ctype not in RULE_FIELDS:
        raise GenerationFailure(f"unknown challenge type {data.get('type')!r}")

    raw_rules = data.get("rules") or {}
    if not isinstance(raw_rules, dict):
        raise GenerationFailure("rules is not an object")
    rules = {
        key: value
        for key, value in ((_snake(k), v) for k, v in raw_rules.items())
        if key in RULE_FIELDS[ctype] and value is not None
    }
    if ctype == "income_percentage" and "target_amount" not in rules:
        percentage = rules.get("percentage")
        if not isinstance(percentage, (int, float)) or isinstance(percentage, bool):
            raise GenerationFailure("income_percentage without numeric percentage")
        rules["target_amount"] = round(context.income_average * percentage / 100)

    difficulty = _enum_text(data, "difficulty", "medium")
    frequency = _enum_text(data, "frequency", "weekly")
    start, end = default_window(frequency, None, now)
    return {
        "type": ctype,
        "difficulty": difficulty,
        "frequency": frequency,
        "title": data.get("title"),
        "description": data.get("description") or "",
        "rules": rules,
        "reward_points": data.get("reward_points") or DEFAULT_REWARD_BY_DIFFICULTY.get(difficulty, 50),
        "start_date": data.get("start_date") or start,
        "end_date": data.get("end_date") or end,
    }
