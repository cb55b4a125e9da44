"""HTTP API tests: auth, error mapping and an end-to-end experiment flow."""
from fastapi.testclient import TestClient

EXPERIMENT = {
    "name": "Product recommendations carousel",
    "type": "recommendation",
    "hypothesis": "Collaborative filtering lifts add-to-cart",
    "primary_metric": "conversion",
    "variants": [
        {"name": "popular", "is_control": True, "configuration": {"source": "popular"}},
        {"name": "collaborative", "configuration": {"source": "cf"}},
    ],
}


def _create_running(client: TestClient, admin_headers) -> dict:
    experiment = client.post("/experiments", json=EXPERIMENT, headers=admin_headers).json()
    response = client.post(f"/experiments/{experiment['id']}/start", headers=admin_headers)
    assert response.status_code == 200
    return response.json()


def test_health_is_public(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Process-Time" in response.headers


def test_missing_token(client: TestClient):
    assert client.get("/experiments").status_code == 401


def test_invalid_token(client: TestClient):
    response = client.get("/experiments", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401


def test_registry_mutations_require_admin(client: TestClient, user_headers):
    response = client.post("/experiments", json=EXPERIMENT, headers=user_headers)

    assert response.status_code == 403


def test_create_and_get_experiment(client: TestClient, admin_headers, user_headers):
    response = client.post("/experiments", json=EXPERIMENT, headers=admin_headers)

    assert response.status_code == 201
    created = response.json()
    assert created["status"] == "draft"
    assert [v["name"] for v in created["variants"]] == ["popular", "collaborative"]

    fetched = client.get(f"/experiments/{created['id']}", headers=user_headers).json()
    assert fetched["hypothesis"] == EXPERIMENT["hypothesis"]

    listing = client.get("/experiments", params={"status": "draft"}, headers=user_headers).json()
    assert listing["total"] == 1


def test_create_without_control_is_bad_request(client: TestClient, admin_headers):
    payload = {**EXPERIMENT, "variants": [{"name": "a"}, {"name": "b"}]}

    response = client.post("/experiments", json=payload, headers=admin_headers)

    assert response.status_code == 400
    assert "control" in response.json()["detail"]


def test_unknown_experiment_is_not_found(client: TestClient, user_headers):
    assert client.get("/experiments/missing", headers=user_headers).status_code == 404


def test_invalid_transition_is_bad_request(client: TestClient, admin_headers):
    experiment = _create_running(client, admin_headers)

    response = client.post(f"/experiments/{experiment['id']}/archive", headers=admin_headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot archive a running experiment"


def test_patch_cannot_null_required_field(client: TestClient, admin_headers):
    experiment = client.post("/experiments", json=EXPERIMENT, headers=admin_headers).json()

    response = client.patch(f"/experiments/{experiment['id']}", json={"name": None}, headers=admin_headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "Field(s) cannot be null: name"


def test_update_variant_and_declare_winner(client: TestClient, admin_headers):
    experiment = _create_running(client, admin_headers)
    treatment_id = experiment["variants"][1]["id"]

    response = client.patch(
        f"/experiments/variants/{treatment_id}",
        json={"configuration": {"source": "cf-v2"}},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["configuration"] == {"source": "cf-v2"}

    response = client.post(f"/experiments/{experiment['id']}/winner/{treatment_id}", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["winning_variant_id"] == treatment_id


def test_delete_experiment(client: TestClient, admin_headers):
    experiment = client.post("/experiments", json=EXPERIMENT, headers=admin_headers).json()

    assert client.delete(f"/experiments/{experiment['id']}", headers=admin_headers).status_code == 204
    assert client.get(f"/experiments/{experiment['id']}", headers=admin_headers).status_code == 404


def test_assignment_flow(client: TestClient, admin_headers, user_headers):
    experiment = _create_running(client, admin_headers)
    url = f"/assignments/{experiment['id']}"

    first = client.post(url, params={"user_id": "u-1"}, headers=user_headers)
    second = client.post(url, params={"user_id": "u-1"}, headers=user_headers)

    assert first.status_code == 200
    assert first.json()["id"] == second.json()["id"]

    assignments = client.get("/assignments", params={"user_id": "u-1"}, headers=user_headers).json()
    assert [a["id"] for a in assignments] == [first.json()["id"]]


def test_assignment_without_identity(client: TestClient, admin_headers, user_headers):
    experiment = _create_running(client, admin_headers)

    response = client.post(f"/assignments/{experiment['id']}", headers=user_headers)

    assert response.status_code == 400


def test_variant_configuration(client: TestClient, admin_headers, user_headers):
    experiment = _create_running(client, admin_headers)

    response = client.get(
        "/assignments/configuration/recommendation", params={"session_id": "s-1"}, headers=user_headers
    )

    assert response.status_code == 200
    body = response.json()
    assert set(body) == {experiment["id"]}
    assert body[experiment["id"]]["configuration"]["source"] in {"popular", "cf"}

    nothing = client.get(
        "/assignments/configuration/pricing", params={"session_id": "s-1"}, headers=user_headers
    )
    assert nothing.status_code == 200
    assert nothing.json() is None


def test_tracking_and_analysis(client: TestClient, admin_headers, user_headers):
    experiment = _create_running(client, admin_headers)
    experiment_id = experiment["id"]
    assignment = client.post(
        f"/assignments/{experiment_id}", params={"user_id": "u-1"}, headers=user_headers
    ).json()

    impression = client.post(
        "/events/impression", json={"assignment_id": assignment["id"]}, headers=user_headers
    )
    assert impression.status_code == 201

    conversion = client.post(
        "/events/conversion",
        json={"assignment_id": assignment["id"], "value": 35.5, "metadata": {"order": "o-1"}},
        headers=user_headers,
    ).json()
    assert conversion["recorded"] == 2
    assert [e["result_type"] for e in conversion["events"]] == ["conversion", "revenue"]
    assert conversion["events"][0]["metadata"] == {"order": "o-1"}

    custom = client.post(
        "/events/custom",
        json={"assignment_id": assignment["id"], "event_type": "share"},
        headers=user_headers,
    ).json()
    assert custom["events"][0]["context"] == "share"

    results = client.get(f"/experiments/{experiment_id}/results", headers=user_headers).json()
    row = next(v for v in results["variants"] if v["variant_id"] == assignment["variant_id"])
    assert (row["impressions"], row["conversions"]) == (1, 1)
    assert row["total_revenue"] == 35.5

    significance = client.get(f"/experiments/{experiment_id}/significance", headers=user_headers).json()
    assert significance["results"][0]["is_control"] is True

    metrics = client.get(
        f"/experiments/{experiment_id}/metrics", params={"interval": "week"}, headers=user_headers
    )
    assert metrics.status_code == 200


def test_unknown_assignment_event(client: TestClient, user_headers):
    response = client.post("/events/interaction", json={"assignment_id": "missing"}, headers=user_headers)

    assert response.status_code == 404


def test_metrics_unknown_interval(client: TestClient, admin_headers, user_headers):
    experiment = _create_running(client, admin_headers)

    response = client.get(
        f"/experiments/{experiment['id']}/metrics", params={"interval": "year"}, headers=user_headers
    )

    assert response.status_code == 400


def test_completion_estimate_without_conversions(client: TestClient, admin_headers, user_headers):
    experiment = _create_running(client, admin_headers)

    response = client.get(
        f"/experiments/{experiment['id']}/completion-estimate",
        params={"daily_traffic": 1000},
        headers=user_headers,
    )

    assert response.status_code == 200
    assert response.json()["days_remaining"] is None


def test_sample_size(client: TestClient, user_headers):
    response = client.get("/analysis/sample-size", params={"baseline": 0.1, "mde": 0.1}, headers=user_headers)

    assert response.status_code == 200
    assert response.json()["required_sample_size"] == 33989


def test_sample_size_zero_effect(client: TestClient, user_headers):
    response = client.get("/analysis/sample-size", params={"baseline": 0.1, "mde": 0}, headers=user_headers)

    assert response.status_code == 400
