from app.core.config import settings


def _create_customer(client, headers: dict[str, str], **overrides) -> dict:
    payload = {
        "first_name": "Ada",
        "last_name": "Obi",
        "email": "ada@example.com",
        "status": "active",
    }
    payload.update(overrides)
    res = client.post("/customers/direct", json=payload, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def _add_order(client, headers: dict[str, str], customer_id: int, amount: float) -> None:
    res = client.post("/orders/direct", json={"customer_id": customer_id, "amount": amount}, headers=headers)
    assert res.status_code == 201, res.text


def _high_spender_rules() -> dict:
    return {
        "kind": "group",
        "logical_operator": "AND",
        "rules": [
            {"kind": "rule", "field": "total_spend", "operator": "greater_than", "value": 1000},
            {"kind": "rule", "field": "status", "operator": "equals", "value": "active"},
        ],
    }


def _seed_three_customers(client, headers: dict[str, str]) -> list[dict]:
    spender = _create_customer(client, headers, email="c1@example.com")
    lapsed = _create_customer(client, headers, email="c2@example.com", status="inactive")
    small = _create_customer(client, headers, email="c3@example.com")
    _add_order(client, headers, spender["id"], 1500)
    _add_order(client, headers, lapsed["id"], 2000)
    _add_order(client, headers, small["id"], 500)
    return [spender, lapsed, small]


def test_preview_counts_live_audience(test_context, make_user):
    client, _ = test_context
    _, headers = make_user()
    _seed_three_customers(client, headers)

    res = client.post("/segments/preview", json={"rules": _high_spender_rules()}, headers=headers)
    assert res.status_code == 200, res.text
    assert res.json() == {"audience_size": 1}


def test_create_segment_freezes_snapshot_and_live_preview_diverges(test_context, make_user):
    client, _ = test_context
    _, headers = make_user()
    customers = _seed_three_customers(client, headers)

    created = client.post(
        "/segments",
        json={"name": "High spenders", "rules": _high_spender_rules()},
        headers=headers,
    )
    assert created.status_code == 201, created.text
    segment = created.json()
    assert segment["audience_size"] == 1
    assert segment["rules"]["rules"][0]["field"] == "total_spend"

    # Push the small spender over the threshold; the snapshot must not move.
    _add_order(client, headers, customers[2]["id"], 700)

    fetched = client.get(f"/segments/{segment['id']}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["audience_size"] == 1

    live = client.post(f"/segments/{segment['id']}/preview", headers=headers)
    assert live.status_code == 200, live.text
    assert live.json() == {
        "segment_id": segment["id"],
        "snapshot_audience_size": 1,
        "live_audience_size": 2,
    }


def test_invalid_rule_tree_is_rejected_before_any_write(test_context, make_user):
    client, _ = test_context
    _, headers = make_user()

    res = client.post(
        "/segments",
        json={
            "name": "Broken",
            "rules": {
                "kind": "group",
                "logical_operator": "AND",
                "rules": [{"kind": "rule", "field": "status", "operator": "like", "value": "a"}],
            },
        },
        headers=headers,
    )
    assert res.status_code == 422
    assert res.json()["error"]["code"] == "validation_error"

    listed = client.get("/segments", headers=headers)
    assert listed.json()["pagination"]["total"] == 0


def test_segments_are_owner_scoped(test_context, make_user):
    client, _ = test_context
    _, owner_headers = make_user("owner@example.com")
    _, other_headers = make_user("other@example.com", "Other")

    created = client.post(
        "/segments",
        json={"name": "Everyone", "rules": {"kind": "group", "logical_operator": "AND", "rules": []}},
        headers=owner_headers,
    )
    assert created.status_code == 201
    segment_id = created.json()["id"]

    assert client.get(f"/segments/{segment_id}", headers=other_headers).status_code == 403
    assert client.get("/segments/9999", headers=owner_headers).status_code == 404
    assert client.get("/segments", headers=other_headers).json()["items"] == []
    assert len(client.get("/segments", headers=owner_headers).json()["items"]) == 1


def test_segment_endpoints_require_token(test_context):
    client, _ = test_context
    res = client.post("/segments/preview", json={"rules": _high_spender_rules()})
    assert res.status_code == 401
    assert res.json()["error"]["code"] == "unauthorized"


def test_generate_from_text_uses_stub_provider(test_context, make_user):
    client, _ = test_context
    _, headers = make_user()
    _seed_three_customers(client, headers)

    res = client.post(
        "/segments/generate-from-text",
        json={"text": "Active customers who spent more than 1000"},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["fallback_used"] is False
    assert body["rules"]["logical_operator"] == "AND"
    assert [rule["field"] for rule in body["rules"]["rules"]] == ["status", "totalSpend"]
    assert body["audience_size"] == 1


def test_generate_from_text_falls_back_when_provider_is_unusable(test_context, make_user):
    client, _ = test_context
    _, headers = make_user()
    _seed_three_customers(client, headers)
    settings.ai_provider = "openai"
    settings_key = settings.openai_api_key
    settings.openai_api_key = None
    try:
        res = client.post("/segments/generate-from-text", json={"text": "people who like cats"}, headers=headers)
    finally:
        settings.openai_api_key = settings_key

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["fallback_used"] is True
    assert body["rules"]["rules"] == [{"kind": "rule", "field": "status", "operator": "equals", "value": "active"}]
    assert body["audience_size"] == 2


def test_preview_rejects_non_finite_rule_values(test_context, make_user):
    client, _ = test_context
    _, headers = make_user()
    _create_customer(client, headers)

    res = client.post(
        "/segments/preview",
        content='{"rules": {"kind": "group", "logical_operator": "AND", "rules": '
        '[{"kind": "rule", "field": "total_spend", "operator": "contains", "value": Infinity}]}}',
        headers={**headers, "Content-Type": "application/json"},
    )
    assert res.status_code == 422
    assert res.json()["error"]["code"] == "validation_error"
