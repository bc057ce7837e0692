import pytest

from app.core.config import settings
from app.services import ai_service
from app.models.campaign import Campaign
from app.models.segment import Segment
from app.services.ai_service import (
    FALLBACK_MESSAGES,
    AIProviderResult,
    generate_rules,
    suggest_messages,
    summarize_campaign,
)


class _ScriptedProvider:
    provider = "scripted"
    model = "scripted-model"

    def __init__(self, text: str = "", error: Exception | None = None):
        self.text = text
        self.error = error
        self.prompts: list[str] = []

    async def complete(self, *, system_prompt: str, user_prompt: str) -> AIProviderResult:
        self.prompts.append(user_prompt)
        if self.error is not None:
            raise self.error
        return AIProviderResult(text=self.text)


@pytest.fixture()
def stub_settings(monkeypatch):
    monkeypatch.setattr(settings, "ai_provider", "stub")


@pytest.mark.anyio
async def test_stub_rules_follow_text_heuristics(stub_settings):
    result = await generate_rules("Inactive customers who have not seen us in 90 days or spent under 200")

    assert result.fallback_used is False
    assert result.provider == "stub"
    assert result.rules.logical_operator == "OR"
    fields = [rule.field for rule in result.rules.rules]
    assert fields == ["status", "totalSpend", "lastSeenAt"]
    assert result.rules.rules[0].value == "inactive"
    assert result.rules.rules[1].operator == "less_than"


@pytest.mark.anyio
async def test_unrecognised_text_falls_back_to_active_customers(stub_settings):
    result = await generate_rules("people who like cats")

    assert result.fallback_used is True
    assert result.rules.model_dump(mode="json") == ai_service.FALLBACK_RULES


@pytest.mark.anyio
async def test_provider_errors_and_bad_replies_degrade_to_fallback(monkeypatch):
    for provider in (
        _ScriptedProvider(error=TimeoutError("upstream timed out")),
        _ScriptedProvider(text="not json"),
        _ScriptedProvider(text='{"logicalOperator": "AND", "rules": [{"field": "status", "operator": "like", "value": 1}]}'),
        _ScriptedProvider(text='{"logicalOperator": "AND", "rules": []}'),
    ):
        monkeypatch.setattr(ai_service, "_get_provider", lambda provider=provider: provider)
        result = await generate_rules("anything")
        assert result.fallback_used is True
        assert result.provider == "scripted"


@pytest.mark.anyio
async def test_legacy_reply_shape_is_accepted(monkeypatch):
    provider = _ScriptedProvider(
        text=(
            '{"logicalOperator": "OR", "rules": ['
            '{"field": "totalSpend", "operator": "greater_than", "value": 500},'
            '{"logicalOperator": "AND", "rules": [{"field": "status", "operator": "equals", "value": "new"}]}'
            "]}"
        )
    )
    monkeypatch.setattr(ai_service, "_get_provider", lambda: provider)

    result = await generate_rules("big or new")

    assert result.fallback_used is False
    assert result.rules.logical_operator == "OR"
    assert result.rules.rules[1].kind == "group"
    assert result.rules.leaf_count() == 2


@pytest.mark.anyio
async def test_prompt_text_is_collapsed_and_truncated(monkeypatch):
    provider = _ScriptedProvider(text='{"rules": [{"field": "status", "operator": "equals", "value": "active"}]}')
    monkeypatch.setattr(ai_service, "_get_provider", lambda: provider)
    monkeypatch.setattr(settings, "ai_max_prompt_chars", 12)

    await generate_rules("active    customers\n\nwith a very long description")

    assert "TEXT: active custo\n" in provider.prompts[0]


@pytest.mark.anyio
async def test_stub_message_suggestions_use_placeholder(stub_settings):
    result = await suggest_messages("Bring back lapsed shoppers with 10% off")

    assert result.fallback_used is False
    assert len(result.messages) == 3
    assert all("{{customer.first_name}}" in message for message in result.messages)


@pytest.mark.anyio
async def test_message_suggestions_fall_back_on_missing_key(monkeypatch):
    monkeypatch.setattr(settings, "ai_provider", "openai")
    monkeypatch.setattr(settings, "openai_api_key", None)

    result = await suggest_messages("Win back customers")

    assert result.fallback_used is True
    assert result.messages == list(FALLBACK_MESSAGES)


@pytest.mark.anyio
async def test_message_reply_is_trimmed_to_three(monkeypatch):
    provider = _ScriptedProvider(text='{"messages": [" one ", "", "two", "three", "four"]}')
    monkeypatch.setattr(ai_service, "_get_provider", lambda: provider)

    result = await suggest_messages("anything")

    assert result.messages == ["one", "two", "three"]


def test_generate_message_endpoint(test_context, make_user):
    client, _ = test_context
    _, headers = make_user()

    res = client.post(
        "/campaigns/generate-message",
        json={"objective": "Celebrate our spring sale", "segment_info": {"name": "Active"}},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["fallback_used"] is False
    assert len(body["messages"]) == 3


@pytest.mark.anyio
async def test_message_reply_with_fewer_than_three_variants_falls_back(monkeypatch):
    provider = _ScriptedProvider(text='{"messages": ["one", "  ", "two"]}')
    monkeypatch.setattr(ai_service, "_get_provider", lambda: provider)

    result = await suggest_messages("anything")

    assert result.fallback_used is True
    assert result.messages == list(FALLBACK_MESSAGES)


def _campaign(**counters) -> Campaign:
    values = {"audience_size": 0, "sent_count": 0, "failed_count": 0}
    values.update(counters)
    return Campaign(name="Spring sale", segment_id=1, message="Hi", created_by_id=1, status="sent", **values)


@pytest.mark.anyio
async def test_stub_summary_reports_delivery_counts(stub_settings):
    result = await summarize_campaign(_campaign(audience_size=5, sent_count=3, failed_count=1), [])

    assert result.fallback_used is False
    assert result.summary == (
        "Spring sale reached 5 customers: 3 delivered and 1 failed. "
        "1 messages are still awaiting a delivery receipt."
    )


@pytest.mark.anyio
async def test_summary_fallback_reports_delivery_rate(monkeypatch):
    monkeypatch.setattr(ai_service, "_get_provider", lambda: _ScriptedProvider(error=TimeoutError("slow")))

    result = await summarize_campaign(_campaign(audience_size=8, sent_count=6, failed_count=2), [])

    assert result.fallback_used is True
    assert result.summary == "Your campaign reached 8 users. 6 messages were delivered successfully (75% delivery rate)."


@pytest.mark.anyio
async def test_summary_fallback_with_empty_audience(monkeypatch):
    for provider in (_ScriptedProvider(text="not json"), _ScriptedProvider(text='{"summary": "   "}')):
        monkeypatch.setattr(ai_service, "_get_provider", lambda provider=provider: provider)

        result = await summarize_campaign(_campaign(), [])

        assert result.fallback_used is True
        assert result.summary == "Your campaign reached 0 users. No messages have been delivered yet."


def test_generate_summary_endpoint_is_owner_scoped(test_context, make_user):
    client, session_local = test_context
    owner_id, owner_headers = make_user()
    _, other_headers = make_user(email="other@example.com", display_name="Other")

    async def _seed() -> int:
        async with session_local() as db:
            segment = Segment(name="All", rules={"kind": "group", "logical_operator": "AND", "rules": []}, created_by_id=owner_id)
            db.add(segment)
            await db.flush()
            campaign = Campaign(
                name="Spring sale",
                segment_id=segment.id,
                message="Hi",
                created_by_id=owner_id,
                status="sent",
                audience_size=2,
                sent_count=2,
                failed_count=0,
            )
            db.add(campaign)
            await db.commit()
            return campaign.id

    campaign_id = client.portal.call(_seed)

    res = client.post("/campaigns/generate-summary", json={"campaign_id": campaign_id}, headers=owner_headers)
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["campaign_id"] == campaign_id
    assert body["fallback_used"] is False
    assert body["summary"] == "Spring sale reached 2 customers: 2 delivered and 0 failed."

    res = client.post("/campaigns/generate-summary", json={"campaign_id": campaign_id}, headers=other_headers)
    assert res.status_code == 403
    assert res.json()["error"]["code"] == "forbidden"

    res = client.post("/campaigns/generate-summary", json={"campaign_id": 99999}, headers=owner_headers)
    assert res.status_code == 404
