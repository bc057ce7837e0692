"""Text-to-rule generation, message copy suggestions and campaign summaries.

All three operations call a pluggable completion provider and never fail towards the
caller: provider errors, unparseable replies and replies that do not validate
are logged and replaced by a fixed fallback.
"""

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from app.core.config import settings
from app.core.observability import log_event
from app.models.campaign import Campaign, CommunicationLog
from app.schemas.rules import RULE_OPERATORS, RuleGroup, tag_legacy_tree

logger = logging.getLogger("crm.ai")

FALLBACK_RULES: dict[str, Any] = {
    "kind": "group",
    "logical_operator": "AND",
    "rules": [{"kind": "rule", "field": "status", "operator": "equals", "value": "active"}],
}

FALLBACK_MESSAGES: tuple[str, ...] = (
    "Hi {{customer.first_name}}, we miss you! Come back and enjoy 15% off your next purchase with code: WELCOME15",
    "{{customer.first_name}}, it's been a while! We'd love to see you again. Use code COMEBACK20 for 20% off today.",
    "Exclusive offer for you, {{customer.first_name}}! Return today and get a free gift with any purchase. Limited time only!",
)

_SPEND_RE = re.compile(
    r"(?:spen[dt]|spending|purchases?)\D{0,20}?"
    r"(over|more than|above|greater than|at least|under|less than|below)\s*\$?(\d+(?:\.\d+)?)"
)
_DAYS_RE = re.compile(r"(\d+)\s*days?")
SUMMARY_LOG_SAMPLE = 10


@dataclass
class AIProviderResult:
    text: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


@dataclass
class RuleGenerationResult:
    rules: RuleGroup
    fallback_used: bool
    provider: str


@dataclass
class MessageSuggestionResult:
    messages: list[str]
    fallback_used: bool
    provider: str


@dataclass
class CampaignSummaryResult:
    summary: str
    fallback_used: bool
    provider: str


class AIProvider(Protocol):
    provider: str
    model: str

    async def complete(self, *, system_prompt: str, user_prompt: str) -> AIProviderResult:
        ...


class StubAIProvider:
    """Deterministic keyword heuristics; replies in the same JSON shapes a model is asked for."""

    provider = "stub"

    def __init__(self, model: str):
        self.model = model

    async def complete(self, *, system_prompt: str, user_prompt: str) -> AIProviderResult:
        task = self._extract_value(user_prompt, "TASK")
        if task == "segment_rules":
            return AIProviderResult(text=json.dumps(self._segment_rules(self._extract_value(user_prompt, "TEXT"))))
        if task == "message_suggestions":
            return AIProviderResult(
                text=json.dumps({"messages": self._messages(self._extract_value(user_prompt, "OBJECTIVE"))})
            )
        if task == "campaign_summary":
            campaign = json.loads(self._extract_value(user_prompt, "CAMPAIGN_JSON") or "{}")
            return AIProviderResult(text=json.dumps({"summary": self._summary(campaign)}))
        raise ValueError(f"Unsupported task '{task}'")

    @staticmethod
    def _extract_value(prompt: str, key: str) -> str:
        for line in prompt.splitlines():
            if line.startswith(f"{key}:"):
                return line.split(":", 1)[1].strip()
        return ""

    @staticmethod
    def _segment_rules(text: str) -> dict[str, Any]:
        lowered = text.lower()
        rules: list[dict[str, Any]] = []

        if "inactive" in lowered:
            rules.append({"field": "status", "operator": "equals", "value": "inactive"})
        elif "new customer" in lowered:
            rules.append({"field": "status", "operator": "equals", "value": "new"})
        elif "active" in lowered:
            rules.append({"field": "status", "operator": "equals", "value": "active"})

        spend = _SPEND_RE.search(lowered)
        if spend:
            operator = "less_than" if spend.group(1) in {"under", "less than", "below"} else "greater_than"
            rules.append({"field": "totalSpend", "operator": operator, "value": float(spend.group(2))})

        days = _DAYS_RE.search(lowered)
        if days and any(marker in lowered for marker in ("not seen", "haven't", "inactive for", "last seen", "since")):
            cutoff = datetime.now(timezone.utc) - timedelta(days=int(days.group(1)))
            rules.append({"field": "lastSeenAt", "operator": "is_before", "value": cutoff.isoformat()})

        if not rules:
            raise ValueError("No segment criteria recognised in text")
        logical_operator = "OR" if " or " in f" {lowered} " else "AND"
        return {"logicalOperator": logical_operator, "rules": rules}

    @staticmethod
    def _messages(objective: str) -> list[str]:
        focus = objective.rstrip(".") or "our latest offers"
        return [
            f"Hi {{{{customer.first_name}}}}, {focus}. Tap to see what's new for you!",
            f"{{{{customer.first_name}}}}, we picked this for you: {focus}. Shop today.",
            f"Good news, {{{{customer.first_name}}}}! {focus}. Don't miss out.",
        ]

    @staticmethod
    def _summary(campaign: dict[str, Any]) -> str:
        name = campaign.get("name") or "This campaign"
        audience = int(campaign.get("audience_size") or 0)
        if audience == 0:
            return f"{name} has not reached any customers yet."
        sent = int(campaign.get("sent_count") or 0)
        failed = int(campaign.get("failed_count") or 0)
        pending = max(audience - sent - failed, 0)
        summary = f"{name} reached {audience} customers: {sent} delivered and {failed} failed."
        if pending:
            summary += f" {pending} messages are still awaiting a delivery receipt."
        return summary


class OpenAIProvider:
    provider = "openai"

    def __init__(self, *, api_key: str, model: str, base_url: str | None = None):
        try:
            from openai import AsyncOpenAI
        except ImportError as exc:
            raise ValueError("openai dependency is not installed") from exc

        client_kwargs: dict[str, str] = {"api_key": api_key}
        if base_url:
            client_kwargs["base_url"] = base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self.model = model

    async def complete(self, *, system_prompt: str, user_prompt: str) -> AIProviderResult:
        completion = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=settings.ai_temperature,
            response_format={"type": "json_object"},
        )

        text = ""
        if completion.choices and completion.choices[0].message:
            text = completion.choices[0].message.content or ""

        usage = completion.usage
        return AIProviderResult(
            text=text.strip(),
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
            total_tokens=usage.total_tokens if usage else None,
        )


def _segment_system_prompt() -> str:
    return (
        "You convert natural language into structured segment rules for a CRM. "
        "Fields: first_name, last_name, email, phone, status (active, inactive, new), "
        "total_spend, last_seen_at, created_at. "
        f"Operators: {', '.join(RULE_OPERATORS)}. is_between takes a [lower, upper] pair. "
        'Respond with JSON: {"logicalOperator": "AND" or "OR", "rules": [{"field", "operator", "value"} or nested groups]}.'
    )


def _segment_user_prompt(text: str, context: dict[str, Any] | None) -> str:
    return (
        "TASK: segment_rules\n"
        f"TEXT: {text}\n"
        f"CONTEXT_JSON: {json.dumps(context or {}, sort_keys=True, default=str)}"
    )


def _messages_system_prompt() -> str:
    return (
        "You write personalised marketing messages for customer campaigns. "
        "Write 3 variants, each at most 160 characters, each using the {{customer.first_name}} placeholder "
        "and ending with a clear call to action. "
        'Respond with JSON: {"messages": ["...", "...", "..."]}.'
    )


def _messages_user_prompt(objective: str, segment_info: dict[str, Any] | None) -> str:
    return (
        "TASK: message_suggestions\n"
        f"OBJECTIVE: {objective}\n"
        f"SEGMENT_JSON: {json.dumps(segment_info or {}, sort_keys=True, default=str)}"
    )


def _summary_system_prompt() -> str:
    return (
        "You are an analytics expert who turns campaign delivery data into clear insights. "
        "Write a 2-3 sentence summary of the campaign performance covering delivery statistics "
        "and any notable failure patterns, in plain language for a business user. "
        'Respond with JSON: {"summary": "..."}.'
    )


def _summary_user_prompt(campaign: Campaign, logs: Sequence[CommunicationLog]) -> str:
    facts = {
        "name": campaign.name,
        "status": campaign.status,
        "audience_size": campaign.audience_size,
        "sent_count": campaign.sent_count,
        "failed_count": campaign.failed_count,
        "sent_at": campaign.sent_at,
    }
    sample = [
        {"status": log.status, "failure_reason": log.failure_reason, "delivered_at": log.delivered_at}
        for log in logs[:SUMMARY_LOG_SAMPLE]
    ]
    return (
        "TASK: campaign_summary\n"
        f"CAMPAIGN_JSON: {json.dumps(facts, sort_keys=True, default=str)}\n"
        f"LOGS_JSON: {json.dumps(sample, sort_keys=True, default=str)}"
    )


def _get_provider() -> AIProvider:
    provider_name = settings.ai_provider.strip().lower()
    if provider_name == "stub":
        return StubAIProvider(model=settings.ai_model)
    if provider_name == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when AI_PROVIDER=openai")
        return OpenAIProvider(
            api_key=settings.openai_api_key,
            model=settings.ai_model,
            base_url=settings.openai_base_url,
        )
    raise ValueError(f"Unsupported ai_provider: {settings.ai_provider}")


def _parse_rules(text: str) -> RuleGroup:
    raw = json.loads(text)
    if not isinstance(raw, dict):
        raise ValueError("Rule reply is not a JSON object")
    rules = RuleGroup.model_validate(tag_legacy_tree(raw))
    if not rules.rules:
        raise ValueError("Rule reply has no rules")
    return rules


def _parse_messages(text: str) -> list[str]:
    raw = json.loads(text)
    if isinstance(raw, dict):
        raw = raw.get("messages")
    if not isinstance(raw, list):
        raise ValueError("Message reply is not a list")
    messages = [item.strip() for item in raw if isinstance(item, str) and item.strip()]
    if len(messages) < len(FALLBACK_MESSAGES):
        raise ValueError(f"Message reply has {len(messages)} variants, expected {len(FALLBACK_MESSAGES)}")
    return messages[: len(FALLBACK_MESSAGES)]


def _parse_summary(text: str) -> str:
    raw = json.loads(text)
    summary = raw.get("summary") if isinstance(raw, dict) else raw
    if not isinstance(summary, str) or not summary.strip():
        raise ValueError("Summary reply is empty")
    return summary.strip()


def fallback_summary(campaign: Campaign) -> str:
    if not campaign.audience_size:
        return "Your campaign reached 0 users. No messages have been delivered yet."
    rate = round(campaign.sent_count * 100 / campaign.audience_size)
    return (
        f"Your campaign reached {campaign.audience_size} users. "
        f"{campaign.sent_count} messages were delivered successfully ({rate}% delivery rate)."
    )


async def generate_rules(text: str, context: dict[str, Any] | None = None) -> RuleGenerationResult:
    prompt_text = " ".join(text.split())[: settings.ai_max_prompt_chars]
    provider_name = settings.ai_provider
    try:
        provider = _get_provider()
        provider_name = provider.provider
        reply = await provider.complete(
            system_prompt=_segment_system_prompt(),
            user_prompt=_segment_user_prompt(prompt_text, context),
        )
        rules = _parse_rules(reply.text)
    except Exception as exc:
        # Transport, SDK, JSON and validation errors all degrade to the fallback tree.
        return _rules_fallback(provider_name, exc)

    log_event(logger, "ai_rules_generated", provider=provider_name, leaf_count=rules.leaf_count())
    return RuleGenerationResult(rules=rules, fallback_used=False, provider=provider_name)


def _rules_fallback(provider_name: str, exc: Exception) -> RuleGenerationResult:
    log_event(
        logger,
        "ai_rules_fallback",
        level=logging.WARNING,
        provider=provider_name,
        error_type=exc.__class__.__name__,
        error=str(exc),
    )
    return RuleGenerationResult(
        rules=RuleGroup.model_validate(FALLBACK_RULES),
        fallback_used=True,
        provider=provider_name,
    )


async def suggest_messages(objective: str, segment_info: dict[str, Any] | None = None) -> MessageSuggestionResult:
    prompt_objective = " ".join(objective.split())[: settings.ai_max_prompt_chars]
    provider_name = settings.ai_provider
    try:
        provider = _get_provider()
        provider_name = provider.provider
        reply = await provider.complete(
            system_prompt=_messages_system_prompt(),
            user_prompt=_messages_user_prompt(prompt_objective, segment_info),
        )
        messages = _parse_messages(reply.text)
    except Exception as exc:
        log_event(
            logger,
            "ai_messages_fallback",
            level=logging.WARNING,
            provider=provider_name,
            error_type=exc.__class__.__name__,
            error=str(exc),
        )
        return MessageSuggestionResult(messages=list(FALLBACK_MESSAGES), fallback_used=True, provider=provider_name)

    log_event(logger, "ai_messages_generated", provider=provider_name, count=len(messages))
    return MessageSuggestionResult(messages=messages, fallback_used=False, provider=provider_name)


async def summarize_campaign(campaign: Campaign, logs: Sequence[CommunicationLog]) -> CampaignSummaryResult:
    provider_name = settings.ai_provider
    try:
        provider = _get_provider()
        provider_name = provider.provider
        reply = await provider.complete(
            system_prompt=_summary_system_prompt(),
            user_prompt=_summary_user_prompt(campaign, logs),
        )
        summary = _parse_summary(reply.text)
    except Exception as exc:
        log_event(
            logger,
            "ai_summary_fallback",
            level=logging.WARNING,
            provider=provider_name,
            campaign_id=campaign.id,
            error_type=exc.__class__.__name__,
            error=str(exc),
        )
        return CampaignSummaryResult(summary=fallback_summary(campaign), fallback_used=True, provider=provider_name)

    log_event(logger, "ai_summary_generated", provider=provider_name, campaign_id=campaign.id)
    return CampaignSummaryResult(summary=summary, fallback_used=False, provider=provider_name)
