from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from app.clients.stub import StubPaymentsClient
from app.domain.errors import PaymentsPermanentError, PaymentsTransientError
from app.domain.models import GiftCardResult, JobStatus, RunStatus, Stage, TriggerType
from app.domain.outcomes import Advance, Finish, RetryableFailure, TerminalFailure
from app.domain.use_cases.ingest import submit_trigger
from app.workers.handlers import booking_attribution, customer_ingest, friend_reward, referrer_reward
from tests.unit.pipeline_helpers import (
    FRIEND_ID,
    REFERRER_CODE,
    REFERRER_ID,
    Pipeline,
    build_pipeline,
    make_job,
    make_run,
    seed_referrer,
)


async def _seed_friend(pipeline: Pipeline, *, used_code: str | None = REFERRER_CODE) -> None:
    await pipeline.directory.upsert_customer(customer_id=FRIEND_ID, given_name="Bob")
    await pipeline.directory.assign_personal_code(customer_id=FRIEND_ID, code="BOB0002")
    if used_code is not None:
        await pipeline.directory.record_used_code(customer_id=FRIEND_ID, code=used_code)


async def _drain(pipeline: Pipeline, *, max_rounds: int = 10) -> list[str]:
    outcomes: list[str] = []
    for _ in range(max_rounds):
        results = await pipeline.dispatcher.dispatch_batch()
        if not results:
            break
        outcomes.extend(f"{result.stage}:{result.outcome}" for result in results)
    return outcomes


@pytest.mark.unit
def test_customer_ingest_assigns_personal_code_once() -> None:
    pipeline = build_pipeline()
    run = make_run(
        stage=Stage.CUSTOMER_INGEST,
        trigger_type=TriggerType.CUSTOMER_INGEST,
        payload={"id": "C-7", "givenName": "Ann"},
    )

    async def _run() -> None:
        first = await customer_ingest.process_job(pipeline.deps, run=run, job=make_job(run))
        second = await customer_ingest.process_job(pipeline.deps, run=run, job=make_job(run))

        assert isinstance(first, Finish)
        assert first.context == {"customer_id": "C-7", "personal_code": "ANN0007"}
        assert second == first

    asyncio.run(_run())


@pytest.mark.unit
def test_customer_ingest_retries_code_on_collision() -> None:
    pipeline = build_pipeline()
    run = make_run(stage=Stage.CUSTOMER_INGEST, payload={"customer_id": "X-0001", "given_name": "Ann"})

    async def _run() -> None:
        await seed_referrer(pipeline.directory)
        outcome = await customer_ingest.process_job(pipeline.deps, run=run, job=make_job(run))

        assert isinstance(outcome, Advance)
        assert outcome.next_stage == Stage.BOOKING_ATTRIBUTION
        assert outcome.context["personal_code"] == "ANN0002"
        customer = await pipeline.directory.get_customer(customer_id="X-0001")
        assert customer is not None
        assert customer.personal_code != REFERRER_CODE

    asyncio.run(_run())


@pytest.mark.unit
def test_customer_ingest_rejects_payload_without_customer() -> None:
    pipeline = build_pipeline()
    run = make_run(stage=Stage.CUSTOMER_INGEST, payload={"booking_id": "B-1"})

    outcome = asyncio.run(customer_ingest.process_job(pipeline.deps, run=run, job=make_job(run)))

    assert outcome == TerminalFailure(error_code="payload_invalid", detail="payload does not carry a customer id")


@pytest.mark.unit
def test_booking_attribution_without_code_finishes_run() -> None:
    pipeline = build_pipeline()
    run = make_run(stage=Stage.BOOKING_ATTRIBUTION, payload={"customer_id": FRIEND_ID})

    async def _run() -> None:
        await seed_referrer(pipeline.directory)
        await _seed_friend(pipeline, used_code=None)
        outcome = await booking_attribution.process_job(pipeline.deps, run=run, job=make_job(run))
        assert isinstance(outcome, Finish)

    asyncio.run(_run())


@pytest.mark.unit
def test_booking_attribution_prefers_code_on_record() -> None:
    pipeline = build_pipeline()
    run = make_run(
        stage=Stage.BOOKING_ATTRIBUTION,
        payload={"customer_id": FRIEND_ID, "referral_code": "ZED0009"},
    )

    async def _run() -> None:
        await seed_referrer(pipeline.directory)
        await pipeline.directory.upsert_customer(customer_id="Z-9", given_name="Zed")
        await pipeline.directory.assign_personal_code(customer_id="Z-9", code="ZED0009")
        await _seed_friend(pipeline)

        outcome = await booking_attribution.process_job(pipeline.deps, run=run, job=make_job(run))

        assert isinstance(outcome, Advance)
        assert outcome.context == {"referral_code": REFERRER_CODE, "referrer_customer_id": REFERRER_ID}

    asyncio.run(_run())


@pytest.mark.unit
def test_booking_attribution_rejects_own_code() -> None:
    pipeline = build_pipeline()
    run = make_run(
        stage=Stage.BOOKING_ATTRIBUTION,
        payload={"customer_id": FRIEND_ID, "referral_code": "bob0002"},
    )

    async def _run() -> None:
        await _seed_friend(pipeline, used_code=None)
        outcome = await booking_attribution.process_job(pipeline.deps, run=run, job=make_job(run))

        assert isinstance(outcome, TerminalFailure)
        assert outcome.error_code == "self_referral"
        friend = await pipeline.directory.get_customer(customer_id=FRIEND_ID)
        assert friend is not None
        assert friend.used_referral_code is None

    asyncio.run(_run())


@pytest.mark.unit
def test_friend_reward_skips_payment_when_bonus_exists() -> None:
    pipeline = build_pipeline()
    run = make_run(stage=Stage.FRIEND_REWARD)

    async def _run() -> None:
        await _seed_friend(pipeline)
        await pipeline.directory.record_friend_bonus(customer_id=FRIEND_ID, gift_card_id="gftc:existing")

        outcome = await friend_reward.process_job(pipeline.deps, run=run, job=make_job(run))

        assert isinstance(outcome, Advance)
        assert outcome.next_stage == Stage.REFERRER_REWARD
        assert pipeline.payments.calls == []

    asyncio.run(_run())


@pytest.mark.unit
def test_friend_reward_permanent_rejection_is_terminal() -> None:
    pipeline = build_pipeline(payments=StubPaymentsClient(failures=[PaymentsPermanentError("location disabled")]))
    run = make_run(stage=Stage.FRIEND_REWARD)

    async def _run() -> None:
        await _seed_friend(pipeline)
        outcome = await friend_reward.process_job(pipeline.deps, run=run, job=make_job(run))
        assert outcome == TerminalFailure(error_code="payments_rejected", detail="location disabled")

    asyncio.run(_run())


@pytest.mark.unit
def test_referrer_reward_refuses_self_referral_without_payment() -> None:
    pipeline = build_pipeline()
    run = make_run(stage=Stage.REFERRER_REWARD, context={"referral_code": REFERRER_CODE})

    async def _run() -> None:
        # The friend ends up owning the code recorded as used.
        await _seed_friend(pipeline, used_code="BOB0002")

        outcome = await referrer_reward.process_job(pipeline.deps, run=run, job=make_job(run))

        assert isinstance(outcome, TerminalFailure)
        assert outcome.error_code == "self_referral"
        assert pipeline.payments.calls == []
        assert pipeline.directory.rewards == {}

    asyncio.run(_run())


@pytest.mark.unit
def test_referrer_reward_unknown_code_is_terminal() -> None:
    pipeline = build_pipeline()
    run = make_run(stage=Stage.REFERRER_REWARD)

    async def _run() -> None:
        await _seed_friend(pipeline, used_code="GONE0001")
        outcome = await referrer_reward.process_job(pipeline.deps, run=run, job=make_job(run))
        assert isinstance(outcome, TerminalFailure)
        assert outcome.error_code == "referral_code_unknown"

    asyncio.run(_run())


@pytest.mark.unit
def test_referrer_reward_tops_up_existing_card() -> None:
    pipeline = build_pipeline()
    run = make_run(stage=Stage.REFERRER_REWARD)

    async def _run() -> None:
        await seed_referrer(pipeline.directory)
        await _seed_friend(pipeline)
        card = await pipeline.payments.issue_gift_card(
            customer_id=REFERRER_ID,
            amount_cents=500,
            currency="USD",
            reference="earlier reward",
            idempotency_key="earlier",
        )
        await pipeline.directory.record_friend_bonus(customer_id=REFERRER_ID, gift_card_id=card.gift_card_id)

        outcome = await referrer_reward.process_job(pipeline.deps, run=run, job=make_job(run))

        assert isinstance(outcome, Finish)
        assert outcome.context == {"referrer_gift_card_id": card.gift_card_id}
        assert pipeline.payments.calls[-1]["op"] == "load"
        assert pipeline.payments.balances[card.gift_card_id] == 1500
        assert await pipeline.directory.has_referrer_reward(
            referrer_customer_id=REFERRER_ID,
            friend_customer_id=FRIEND_ID,
        )
        assert [event for event, _ in pipeline.sink.events] == ["referrer_reward_issued"]

    asyncio.run(_run())


@pytest.mark.unit
def test_referrer_reward_transient_failure_is_retryable() -> None:
    pipeline = build_pipeline(payments=StubPaymentsClient(failures=[PaymentsTransientError("timeout")]))
    run = make_run(stage=Stage.REFERRER_REWARD)

    async def _run() -> None:
        await seed_referrer(pipeline.directory)
        await _seed_friend(pipeline)
        outcome = await referrer_reward.process_job(pipeline.deps, run=run, job=make_job(run))
        assert outcome == RetryableFailure(error_code="payments_unavailable", detail="timeout")
        assert not await pipeline.directory.has_referrer_reward(
            referrer_customer_id=REFERRER_ID,
            friend_customer_id=FRIEND_ID,
        )
        # The retry of the same run still holds the reservation.
        assert pipeline.directory.rewards[(REFERRER_ID, FRIEND_ID)]["reserved_by"] == run.correlation_id
        retried = await referrer_reward.process_job(pipeline.deps, run=run, job=make_job(run))
        assert isinstance(retried, Finish)
        assert retried.detail == "referrer rewarded"

    asyncio.run(_run())


@pytest.mark.unit
def test_concurrent_payment_runs_reward_the_referrer_once() -> None:
    class _SlowPaymentsClient(StubPaymentsClient):
        async def issue_gift_card(self, **kwargs: object) -> GiftCardResult:
            await asyncio.sleep(0.01)
            return await super().issue_gift_card(**kwargs)  # type: ignore[arg-type]

    pipeline = build_pipeline(payments=_SlowPaymentsClient())
    first_run = make_run(stage=Stage.REFERRER_REWARD)
    second_run = replace(first_run, correlation_id="payment_completed:unit-2", resource_id="unit-resource-2")

    async def _run() -> None:
        await seed_referrer(pipeline.directory)
        await _seed_friend(pipeline)

        outcomes = await asyncio.gather(
            referrer_reward.process_job(pipeline.deps, run=first_run, job=make_job(first_run)),
            referrer_reward.process_job(pipeline.deps, run=second_run, job=make_job(second_run)),
        )

        assert all(isinstance(outcome, Finish) for outcome in outcomes)
        assert sorted(outcome.detail for outcome in outcomes) == [
            "referrer reward for this friend belongs to another run",
            "referrer rewarded",
        ]
        assert len(pipeline.payments.calls) == 1
        assert [event for event, _ in pipeline.sink.events] == ["referrer_reward_issued"]

    asyncio.run(_run())


@pytest.mark.unit
def test_payment_trigger_rewards_both_sides_exactly_once() -> None:
    pipeline = build_pipeline()

    async def _run() -> None:
        await seed_referrer(pipeline.directory)
        payload: dict[str, object] = {"customer_id": FRIEND_ID, "given_name": "Bob", "referral_code": REFERRER_CODE}
        first = await submit_trigger(
            pipeline.repository,
            policy=pipeline.policy,
            trigger_type="payment_completed",
            resource_id="pay-1",
            payload=payload,
        )
        pipeline.clock.advance(60)
        outcomes = await _drain(pipeline)

        assert outcomes == [
            "customer_ingest:advanced",
            "booking_attribution:advanced",
            "friend_reward:advanced",
            "referrer_reward:finished",
        ]
        run = await pipeline.repository.get_run(correlation_id=first.run.correlation_id)
        assert run is not None
        assert run.status == RunStatus.COMPLETED
        assert [call["op"] for call in pipeline.payments.calls] == ["issue", "issue"]

        # A second payment by the same friend pays nobody again.
        await submit_trigger(
            pipeline.repository,
            policy=pipeline.policy,
            trigger_type="payment_completed",
            resource_id="pay-2",
            payload=payload,
        )
        pipeline.clock.advance(60)
        assert (await _drain(pipeline))[-1] == "referrer_reward:finished"
        assert len(pipeline.payments.calls) == 2
        assert len(pipeline.directory.rewards) == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_self_referral_run_ends_in_error_after_one_attempt() -> None:
    pipeline = build_pipeline()

    async def _run() -> None:
        created = await submit_trigger(
            pipeline.repository,
            policy=pipeline.policy,
            trigger_type="booking_created",
            resource_id="evt-self",
            payload={"customer_id": FRIEND_ID, "given_name": "Bob", "referral_code": "BOB0002"},
        )
        pipeline.clock.advance(60)
        outcomes = await _drain(pipeline)

        assert outcomes == ["customer_ingest:advanced", "booking_attribution:failed"]
        jobs = await pipeline.repository.list_jobs_for_run(correlation_id=created.run.correlation_id)
        assert jobs[-1].status == JobStatus.ERROR
        assert jobs[-1].attempts == 1
        run = await pipeline.repository.get_run(correlation_id=created.run.correlation_id)
        assert run is not None
        assert run.status == RunStatus.ERROR
        assert pipeline.payments.calls == []

    asyncio.run(_run())
