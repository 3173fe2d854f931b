import asyncio

from fastapi.testclient import TestClient
import pytest

from app.api.http_app import build_app
from app.roles import validate_role
from app.services.bootstrap import RuntimeContainer, build_runtime_container


@pytest.fixture(autouse=True)
def _skeleton_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DATABASE_URL", "SQUARE_ACCESS_TOKEN", "SQUARE_LOCATION_ID", "ENABLE_REFERRAL_ANALYTICS"):
        monkeypatch.delenv(name, raising=False)


def _api(container: RuntimeContainer) -> TestClient:
    app = build_app(
        role="api",
        run_id="integration-api",
        worker_loop=container.worker_loop,
        api_deps=container.api_deps,
    )
    return TestClient(app)


def _dispatch_until_idle(client: TestClient, *, max_rounds: int = 10) -> list[dict]:
    results: list[dict] = []
    for _ in range(max_rounds):
        response = client.post("/ops/dispatch", json={"limit": 10})
        assert response.status_code == 200
        body = response.json()
        if body["claimed"] == 0:
            break
        results.extend(body["results"])
    return results


@pytest.mark.integration
def test_health_and_ready_for_api_role() -> None:
    container = build_runtime_container(validate_role("api"))

    with _api(container) as client:
        health = client.get("/health")
        ready = client.get("/ready")

    assert health.json() == {"status": "ok", "role": "api", "mode": "skeleton"}
    assert ready.json()["worker_loop_enabled"] is False
    assert ready.json()["worker_loop_ready"] is True


@pytest.mark.integration
def test_trigger_redelivery_returns_same_run() -> None:
    container = build_runtime_container(validate_role("api"))

    with _api(container) as client:
        body = {"trigger_type": "booking_created", "resource_id": "evt-123", "payload": {"customer_id": "C-1"}}
        first = client.post("/events", json=body)
        second = client.post("/events", json=body)

        assert first.status_code == 200
        assert first.json()["created"] is True
        assert first.json()["stage"] == "customer_ingest"
        assert second.json()["created"] is False
        assert second.json()["correlation_id"] == first.json()["correlation_id"]

        detail = client.get(f"/runs/{first.json()['correlation_id']}")
        assert detail.status_code == 200
        assert len(detail.json()["jobs"]) == 1


@pytest.mark.integration
@pytest.mark.parametrize(
    "body",
    [
        {"trigger_type": "refund_issued", "resource_id": "evt-1"},
        {"trigger_type": "booking_created", "resource_id": ""},
        {"trigger_type": "booking_created", "resource_id": "   "},
    ],
)
def test_invalid_trigger_is_rejected(body: dict) -> None:
    container = build_runtime_container(validate_role("api"))

    with _api(container) as client:
        response = client.post("/events", json=body)

    assert response.status_code == 422


@pytest.mark.integration
def test_unknown_run_and_job_return_404() -> None:
    container = build_runtime_container(validate_role("api"))

    with _api(container) as client:
        assert client.get("/runs/booking_created:missing").status_code == 404
        assert client.post("/ops/jobs/job_missing/reset").status_code == 404


@pytest.mark.integration
def test_referral_flow_through_operator_endpoints() -> None:
    container = build_runtime_container(validate_role("api"))
    directory = container.directory

    async def _seed_referrer() -> None:
        await directory.upsert_customer(customer_id="CUST-REF-0001", given_name="Ann")
        await directory.assign_personal_code(customer_id="CUST-REF-0001", code="ANN0001")

    asyncio.run(_seed_referrer())

    with _api(container) as client:
        created = client.post(
            "/events",
            json={
                "trigger_type": "payment_completed",
                "resource_id": "pay-1",
                "payload": {"customer_id": "CUST-FRIEND-0002", "given_name": "Bob", "referral_code": "ann0001"},
            },
        ).json()

        results = _dispatch_until_idle(client)

        assert [(item["stage"], item["outcome"]) for item in results] == [
            ("customer_ingest", "advanced"),
            ("booking_attribution", "advanced"),
            ("friend_reward", "advanced"),
            ("referrer_reward", "finished"),
        ]
        detail = client.get(f"/runs/{created['correlation_id']}").json()
        assert detail["run"]["status"] == "completed"
        assert detail["run"]["context"]["referral_code"] == "ANN0001"
        assert detail["run"]["context"]["personal_code"] == "BOB0002"
        assert [job["status"] for job in detail["jobs"]] == ["completed"] * 4

        queue = client.get("/ops/queue").json()
        assert queue["counts"]["completed"] == 4
        assert queue["stuck_count"] == 0
        assert queue["dead_letters"] == 0

        reset = client.post(f"/ops/jobs/{detail['jobs'][0]['id']}/reset")
        assert reset.status_code == 409


@pytest.mark.integration
def test_failed_job_can_be_reset_by_operator() -> None:
    container = build_runtime_container(validate_role("api"))

    with _api(container) as client:
        created = client.post(
            "/events",
            json={"trigger_type": "customer_ingest", "resource_id": "cust-bad", "payload": {"note": "no id"}},
        ).json()
        [result] = _dispatch_until_idle(client)
        assert result["outcome"] == "failed"

        queue = client.get("/ops/queue").json()
        assert queue["counts"]["error"] == 1
        assert queue["recent_errors"][0]["last_error"].startswith("payload_invalid")

        reset = client.post(f"/ops/jobs/{result['job_id']}/reset", json={"extra_attempts": 2})
        assert reset.status_code == 200
        assert reset.json()["status"] == "queued"
        assert reset.json()["max_attempts"] == 3

        run = client.get(f"/runs/{created['correlation_id']}").json()["run"]
        assert run["status"] == "running"


@pytest.mark.integration
def test_dead_letters_listed_and_replayed() -> None:
    container = build_runtime_container(validate_role("api"))
    sink = container.analytics.sink

    async def _dead_letter() -> None:
        sink.fail_next = 1  # type: ignore[attr-defined]
        await container.analytics.record(event_type="friend_reward_issued", payload={"amount_cents": 1000})

    asyncio.run(_dead_letter())

    with _api(container) as client:
        listed = client.get("/ops/dead-letters", params={"limit": 10}).json()
        assert [item["event_type"] for item in listed["items"]] == ["friend_reward_issued"]

        replay = client.post("/ops/dead-letters/replay", json={"batch_size": 10})
        assert replay.json() == {"replayed": 1, "failed": 0, "remaining": 0}
        assert client.get("/ops/dead-letters").json()["items"] == []

        reap = client.post("/ops/reap")
        assert reap.json() == {"reaped": 0, "jobs": []}


@pytest.mark.integration
def test_worker_role_exposes_health_endpoints_only() -> None:
    container = build_runtime_container(validate_role("worker-reaper"))
    app = build_app(
        role="worker-reaper",
        run_id="integration-worker",
        worker_loop=container.worker_loop,
        api_deps=container.api_deps,
    )

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        ready = client.get("/ready").json()
        assert ready["worker_loop_enabled"] is True
        assert client.get("/ops/queue").status_code == 404
        assert client.post("/events", json={}).status_code == 404


@pytest.mark.integration
def test_operator_routes_without_dependencies_return_503() -> None:
    app = build_app(role="api", run_id="integration-bare")

    with TestClient(app) as client:
        assert client.get("/ops/queue").status_code == 503
