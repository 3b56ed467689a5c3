"""Experiment lifecycle: CRUD, start, assignment, ingestion, winners and expiry."""
from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from ab_engine import AudienceStore, ExperimentNotFoundError, ExperimentValidationError
from ab_engine.collaborators import MongoAudienceStore
from database import ensure_indexes

from conftest import make_contacts, set_counters


async def scenario_counters(controller, variants, control_opened=80, challenger_opened=110):
    """Control at 40% and challenger at 55% opens on 200 delivered each"""
    await set_counters(controller, variants[0], delivered=200, opened=control_opened)
    await set_counters(controller, variants[1], delivered=200, opened=challenger_opened)


@pytest.mark.asyncio
class TestDraftEditing:

    async def test_create_starts_in_draft(self, controller, build_experiment):
        experiment, variants = await build_experiment()

        stored = await controller.get_experiment(str(experiment["_id"]))
        assert stored["status"] == "draft"
        assert stored["winning_variant_id"] is None
        assert [variant["name"] for variant in await controller.get_variants(experiment["_id"])] == [
            "Variant A", "Variant B",
        ]

    async def test_running_allocation_may_not_exceed_100(self, controller, build_experiment):
        experiment, _ = await build_experiment(allocations=(60, 40))

        with pytest.raises(ExperimentValidationError, match="cannot exceed 100%"):
            await controller.add_variant(experiment["_id"], {"name": "Variant C", "traffic_allocation": 1})

    async def test_update_and_delete_only_in_draft(self, db, controller, build_experiment):
        experiment, _ = await build_experiment()

        updated = await controller.update_experiment(experiment["_id"], {"name": "Renamed", "status": "active"})
        assert updated["name"] == "Renamed"
        assert updated["status"] == "draft"

        await controller.start_experiment(experiment["_id"])

        with pytest.raises(ExperimentValidationError, match="Only draft tests can be updated"):
            await controller.update_experiment(experiment["_id"], {"name": "Again"})
        with pytest.raises(ExperimentValidationError, match="Only draft tests can be deleted"):
            await controller.delete_experiment(experiment["_id"])
        with pytest.raises(ExperimentValidationError, match="draft tests"):
            await controller.add_variant(experiment["_id"], {"name": "Late", "traffic_allocation": 0})

    async def test_delete_draft_removes_variants(self, db, controller, build_experiment):
        experiment, _ = await build_experiment()

        await controller.delete_experiment(experiment["_id"])

        assert await db.ab_tests.count_documents({}) == 0
        assert await db.ab_test_variants.count_documents({}) == 0

    async def test_unknown_and_malformed_ids(self, controller):
        with pytest.raises(ExperimentNotFoundError):
            await controller.get_experiment(str(ObjectId()))
        with pytest.raises(ExperimentNotFoundError):
            await controller.get_experiment("not-an-id")

    async def test_list_is_newest_first(self, controller, build_experiment):
        first, _ = await build_experiment()
        second, _ = await build_experiment()
        await build_experiment(owner_id="someone-else")

        listed = await controller.list_experiments("owner-1")
        assert [experiment["_id"] for experiment in listed] == [second["_id"], first["_id"]]


@pytest.mark.asyncio
class TestStart:

    @pytest.mark.parametrize("allocations,message", [
        ((100,), "at least 2 variants"),
        ((60, 30), "must equal 100%"),
    ])
    async def test_invalid_variants_leave_draft(self, db, controller, scheduler, build_experiment,
                                                allocations, message):
        experiment, _ = await build_experiment(allocations=allocations)

        with pytest.raises(ExperimentValidationError, match=message):
            await controller.start_experiment(experiment["_id"])

        stored = await db.ab_tests.find_one({"_id": experiment["_id"]})
        assert stored["status"] == "draft"
        assert "started_at" not in stored
        assert scheduler.assignments == []

    async def test_two_controls_rejected(self, controller, build_experiment):
        experiment, _ = await build_experiment(allocations=(50,))
        await controller.add_variant(experiment["_id"], {
            "name": "Second control", "is_control": True, "traffic_allocation": 50,
        })

        with pytest.raises(ExperimentValidationError, match="exactly one control"):
            await controller.start_experiment(experiment["_id"])

    async def test_start_defers_assignment(self, db, controller, scheduler, build_experiment):
        experiment, _ = await build_experiment()

        started = await controller.start_experiment(experiment["_id"])

        assert started["status"] == "active"
        assert scheduler.assignments == [str(experiment["_id"])]
        assert await db.ab_test_segments.count_documents({}) == 0

        stored = await db.ab_tests.find_one({"_id": experiment["_id"]})
        assert stored["status"] == "active"
        assert stored["started_at"] is not None

    async def test_start_twice_rejected(self, controller, build_experiment):
        experiment, _ = await build_experiment()
        await controller.start_experiment(experiment["_id"])

        with pytest.raises(ExperimentValidationError, match="draft status to start"):
            await controller.start_experiment(experiment["_id"])


@pytest.mark.asyncio
class TestAssignment:

    async def test_sizes_and_disjointness(self, db, controller, build_experiment):
        experiment, variants = await build_experiment(test_percentage=50)
        await controller.start_experiment(experiment["_id"])

        assigned = await controller.assign_recipients(str(experiment["_id"]))

        assert assigned["eligible_count"] == 400
        assert assigned["test_audience_size"] == 200
        assert assigned["variants"] == {str(variants[0]["_id"]): 100, str(variants[1]["_id"]): 100}

        addresses = await db.ab_test_segments.distinct("recipient_email", {"experiment_id": experiment["_id"]})
        assert len(addresses) == 200
        assert await db.ab_test_segments.count_documents({"experiment_id": experiment["_id"]}) == 200

        stored = await db.ab_tests.find_one({"_id": experiment["_id"]})
        assert stored["test_audience_size"] == 200
        assert stored["assigned_at"] is not None

    async def test_assignment_runs_once(self, db, controller, running_experiment):
        experiment, _ = await running_experiment()

        assert await controller.assign_recipients(experiment["_id"]) is None
        assert await db.ab_test_segments.count_documents({}) == 400

    async def test_draft_is_not_assigned(self, db, controller, build_experiment):
        experiment, _ = await build_experiment()

        assert await controller.assign_recipients(experiment["_id"]) is None
        assert await db.ab_test_segments.count_documents({}) == 0

    async def test_segment_filters_apply(self, db, controller, audience, build_experiment):
        audience.contacts.extend(make_contacts(50, tags=["vip"], company="Acme", start=1000))
        experiment, _ = await build_experiment(segment_filters={"tags": ["vip"], "companies": ["Acme"]})
        await controller.start_experiment(experiment["_id"])

        assigned = await controller.assign_recipients(experiment["_id"])

        assert assigned["eligible_count"] == 50
        assert sum(assigned["variants"].values()) == 50

    async def test_empty_audience_assigns_nothing(self, controller, audience, build_experiment):
        audience.contacts.clear()
        experiment, _ = await build_experiment()
        await controller.start_experiment(experiment["_id"])

        assigned = await controller.assign_recipients(experiment["_id"])

        assert assigned["test_audience_size"] == 0
        assert set(assigned["variants"].values()) == {0}

    async def test_duplicate_memberships_are_assigned_once(self, db, controller, build_experiment):
        await ensure_indexes(db)
        await db.subscribers.insert_many([
            {"email": f"member{index}@example.com", "list": list_name, "status": "active"}
            for index in range(40)
            for list_name in ("news", "promo")
        ])
        controller.audience = MongoAudienceStore(db)
        experiment, _ = await build_experiment()
        await controller.start_experiment(experiment["_id"])

        assigned = await controller.assign_recipients(experiment["_id"])

        assert assigned["eligible_count"] == 40
        assert sum(assigned["variants"].values()) == 40
        addresses = await db.ab_test_segments.distinct("recipient_email", {"experiment_id": experiment["_id"]})
        assert len(addresses) == 40
        assert await db.ab_test_segments.count_documents({"experiment_id": experiment["_id"]}) == 40

    async def test_failed_assignment_can_be_retried(self, db, controller, monkeypatch, build_experiment):
        experiment, variants = await build_experiment()
        await controller.start_experiment(experiment["_id"])

        async def broken_cache(experiment_id):
            raise RuntimeError("mongo went away")

        with monkeypatch.context() as patched:
            patched.setattr(controller.ledger, "rebuild_recipient_cache", broken_cache)
            with pytest.raises(RuntimeError):
                await controller.assign_recipients(experiment["_id"])

        stored = await db.ab_tests.find_one({"_id": experiment["_id"]})
        assert "assignment_started_at" not in stored
        assert await db.ab_test_segments.count_documents({"experiment_id": experiment["_id"]}) == 0
        assert await db.ab_test_results.count_documents({"experiment_id": experiment["_id"]}) == 0

        assigned = await controller.assign_recipients(experiment["_id"])

        assert sum(assigned["variants"].values()) == 400
        assert await db.ab_test_segments.count_documents({"experiment_id": experiment["_id"]}) == 400
        control = await db.ab_test_variants.find_one({"_id": variants[0]["_id"]})
        assert len(control["assigned_recipients"]) == 200

    async def test_audience_store_failure_releases_claim(self, db, controller, build_experiment):
        class UnavailableAudience(AudienceStore):
            async def list_active_contacts(self, owner_id):
                raise ConnectionError("audience store down")

        working = controller.audience
        controller.audience = UnavailableAudience()
        experiment, _ = await build_experiment()
        await controller.start_experiment(experiment["_id"])

        with pytest.raises(ConnectionError):
            await controller.assign_recipients(experiment["_id"])

        controller.audience = working
        assigned = await controller.assign_recipients(experiment["_id"])
        assert assigned["test_audience_size"] == 400


@pytest.mark.asyncio
class TestEventIngestion:

    async def test_fan_out_to_every_active_experiment(self, db, controller, scheduler, running_experiment):
        first, first_variants = await running_experiment()
        second, _ = await running_experiment()

        touched = await controller.ingest_event("user1@example.com", "opened")

        assert sorted(touched) == sorted([str(first["_id"]), str(second["_id"])])
        assert sorted(scheduler.recomputes) == sorted(touched)

        record = await db.ab_test_segments.find_one({"experiment_id": first["_id"], "recipient_email": "user1@example.com"})
        assert [event["type"] for event in record["events"]] == ["assigned", "opened"]

        result = await db.ab_test_results.find_one({"variant_id": record["variant_id"]})
        assert result["metrics"]["opened"] == 1

    async def test_paused_experiments_drop_events(self, controller, scheduler, running_experiment):
        experiment, _ = await running_experiment()
        await controller.pause_experiment(experiment["_id"])

        assert await controller.ingest_event("user1@example.com", "opened") == []
        assert scheduler.recomputes == []

    async def test_unknown_recipient(self, controller, running_experiment):
        await running_experiment()
        assert await controller.ingest_event("stranger@example.com", "opened") == []

    async def test_assigned_is_not_ingestible(self, controller):
        with pytest.raises(ExperimentValidationError, match="Unsupported event type"):
            await controller.ingest_event("user1@example.com", "assigned")

    async def test_scheduler_failure_does_not_lose_the_event(self, db, controller, scheduler, running_experiment):
        experiment, _ = await running_experiment()

        def broken(experiment_id):
            raise RuntimeError("broker down")
        scheduler.schedule_recompute = broken

        touched = await controller.ingest_event("user1@example.com", "clicked")

        assert touched == [str(experiment["_id"])]
        record = await db.ab_test_segments.find_one({"recipient_email": "user1@example.com"})
        assert record["events"][-1]["type"] == "clicked"


@pytest.mark.asyncio
class TestSignificanceAndWinners:

    async def test_automatic_winner(self, db, controller, running_experiment):
        experiment, variants = await running_experiment(automatic_winner=True)
        await scenario_counters(controller, variants)

        outcome = await controller.recompute_significance(str(experiment["_id"]))

        assert outcome["winner"]["variant_id"] == str(variants[1]["_id"])
        significance = outcome["winner"]["significance"]
        assert significance["z_score"] == pytest.approx(3.00, abs=0.01)
        assert significance["lift"] == pytest.approx(37.5)

        stored = await db.ab_tests.find_one({"_id": experiment["_id"]})
        assert stored["status"] == "completed"
        assert stored["winning_variant_id"] == variants[1]["_id"]

        details = await controller.get_experiment_details(experiment["_id"])
        assert {insight["insight_type"] for insight in details["insights"]} == {
            "winner_declared", "statistical_significance",
        }

    async def test_analysis_persisted_on_results(self, db, controller, running_experiment):
        experiment, variants = await running_experiment()
        await scenario_counters(controller, variants)

        await controller.recompute_significance(experiment["_id"])

        control = await db.ab_test_results.find_one({"variant_id": variants[0]["_id"]})
        challenger = await db.ab_test_results.find_one({"variant_id": variants[1]["_id"]})
        assert control["statistical_analysis"]["is_control"] is True
        assert control["statistical_analysis"]["sample_size"] == 200
        assert challenger["statistical_analysis"]["statistical_significance"] is True
        assert challenger["statistical_analysis"]["p_value"] < 0.01

    async def test_without_automatic_winner_only_recommends(self, db, controller, running_experiment):
        experiment, variants = await running_experiment()
        await scenario_counters(controller, variants)

        analyzed = await controller.analyze_significance(experiment["_id"])

        assert analyzed["has_significant_results"] is True
        assert analyzed["recommended_action"] == "declare_winner"
        assert analyzed["winner_declared"] is False
        assert analyzed["analysis"][0]["is_control"] is True
        assert analyzed["analysis"][0]["significance"] is None
        assert analyzed["analysis"][1]["recommended_sample_size"] > 0

        stored = await db.ab_tests.find_one({"_id": experiment["_id"]})
        assert stored["status"] == "active"

    async def test_analyze_with_auto_flag_declares(self, controller, running_experiment):
        experiment, variants = await running_experiment(automatic_winner=True)
        await scenario_counters(controller, variants)

        analyzed = await controller.analyze_significance(experiment["_id"])

        assert analyzed["winner_declared"] is True

    async def test_analysis_is_stable(self, controller, running_experiment):
        experiment, variants = await running_experiment()
        await scenario_counters(controller, variants)

        first = await controller.analyze_significance(experiment["_id"])
        second = await controller.analyze_significance(experiment["_id"])

        assert first["analysis"] == second["analysis"]

    async def test_below_sample_floor_continues(self, controller, running_experiment):
        experiment, variants = await running_experiment(test_percentage=10)
        await set_counters(controller, variants[0], delivered=20, opened=1)
        await set_counters(controller, variants[1], delivered=20, opened=19)

        analyzed = await controller.analyze_significance(experiment["_id"])

        assert analyzed["recommended_action"] == "continue_test"
        assert analyzed["analysis"][1]["significance"]["p_value"] is None

    async def test_negative_lift_is_no_winner(self, db, controller, running_experiment):
        experiment, variants = await running_experiment(automatic_winner=True)
        await scenario_counters(controller, variants, control_opened=110, challenger_opened=80)

        outcome = await controller.recompute_significance(experiment["_id"])

        assert outcome["winner"] is None
        assert (await db.ab_tests.find_one({"_id": experiment["_id"]}))["status"] == "active"

    async def test_sequential_minimum_sample_gates_the_winner(self, db, controller, running_experiment):
        experiment, variants = await running_experiment(
            automatic_winner=True,
            test_duration={"type": "sequential", "max_days": None, "min_sample_size": 500},
        )
        await scenario_counters(controller, variants)

        outcome = await controller.recompute_significance(experiment["_id"])

        assert outcome["significant"]
        assert outcome["winner"] is None
        assert (await db.ab_tests.find_one({"_id": experiment["_id"]}))["status"] == "active"

    @pytest.mark.parametrize("criteria", [
        {"minimum_improvement": 50},
        {"significance_threshold": 0.001},
    ])
    async def test_selection_criteria_gate_the_winner(self, controller, running_experiment, criteria):
        experiment, variants = await running_experiment(automatic_winner=True, criteria=criteria)
        await scenario_counters(controller, variants)

        outcome = await controller.recompute_significance(experiment["_id"])

        assert outcome["winner"] is None

    async def test_tie_goes_to_first_declared(self, controller, running_experiment):
        experiment, variants = await running_experiment(allocations=(40, 30, 30), automatic_winner=True)
        await set_counters(controller, variants[0], delivered=160, opened=64)
        await set_counters(controller, variants[1], delivered=120, opened=66)
        await set_counters(controller, variants[2], delivered=120, opened=66)

        outcome = await controller.recompute_significance(experiment["_id"])

        assert len(outcome["significant"]) == 2
        assert outcome["winner"]["variant_id"] == str(variants[1]["_id"])

    async def test_analyze_requires_active(self, controller, build_experiment):
        experiment, _ = await build_experiment()

        with pytest.raises(ExperimentValidationError, match="must be active"):
            await controller.analyze_significance(experiment["_id"])

    async def test_analyze_before_assignment(self, controller, build_experiment):
        experiment, _ = await build_experiment()
        await controller.start_experiment(experiment["_id"])

        with pytest.raises(ExperimentValidationError, match="at least 2 variants"):
            await controller.analyze_significance(experiment["_id"])
        assert await controller.recompute_significance(experiment["_id"]) is None


@pytest.mark.asyncio
class TestManualWinner:

    async def test_declare_then_reject_second(self, db, controller, running_experiment):
        experiment, variants = await running_experiment()

        completed = await controller.declare_winner(experiment["_id"], str(variants[0]["_id"]))

        assert completed["status"] == "completed"
        assert completed["winning_variant_id"] == variants[0]["_id"]
        with pytest.raises(ExperimentValidationError, match="already completed"):
            await controller.declare_winner(experiment["_id"], str(variants[1]["_id"]))

        insight = await db.ab_test_insights.find_one({"experiment_id": experiment["_id"]})
        assert insight["data"]["manual"] is True

    async def test_completed_tests_ignore_recompute(self, db, controller, running_experiment):
        experiment, variants = await running_experiment(automatic_winner=True)
        await controller.declare_winner(experiment["_id"], variants[0]["_id"])
        await scenario_counters(controller, variants)

        assert await controller.recompute_significance(experiment["_id"]) is None
        stored = await db.ab_tests.find_one({"_id": experiment["_id"]})
        assert stored["winning_variant_id"] == variants[0]["_id"]

    async def test_declare_from_paused(self, controller, running_experiment):
        experiment, variants = await running_experiment()
        await controller.pause_experiment(experiment["_id"])

        completed = await controller.declare_winner(experiment["_id"], variants[1]["_id"])

        assert completed["status"] == "completed"

    async def test_variant_must_belong_to_experiment(self, controller, running_experiment):
        experiment, _ = await running_experiment()
        _, other_variants = await running_experiment()

        with pytest.raises(ExperimentNotFoundError, match="Variant not found"):
            await controller.declare_winner(experiment["_id"], other_variants[0]["_id"])

    async def test_draft_cannot_have_a_winner(self, controller, build_experiment):
        experiment, variants = await build_experiment()

        with pytest.raises(ExperimentValidationError, match="active or paused"):
            await controller.declare_winner(experiment["_id"], variants[0]["_id"])


@pytest.mark.asyncio
class TestPauseResume:

    async def test_round_trip(self, controller, running_experiment):
        experiment, _ = await running_experiment()

        paused = await controller.pause_experiment(experiment["_id"])
        assert paused["status"] == "paused"
        assert await controller.recompute_significance(experiment["_id"]) is None

        resumed = await controller.resume_experiment(experiment["_id"])
        assert resumed["status"] == "active"

    async def test_invalid_transitions(self, controller, build_experiment):
        experiment, _ = await build_experiment()

        with pytest.raises(ExperimentValidationError, match="Only active tests can be paused"):
            await controller.pause_experiment(experiment["_id"])

        await controller.start_experiment(experiment["_id"])
        with pytest.raises(ExperimentValidationError, match="Only paused tests can be resumed"):
            await controller.resume_experiment(experiment["_id"])


@pytest.mark.asyncio
class TestExpiry:

    fixed = {"type": "fixed", "max_days": 7, "min_sample_size": None}

    async def backdate(self, db, experiment, days):
        await db.ab_tests.update_one(
            {"_id": experiment["_id"]},
            {"$set": {"started_at": datetime.utcnow() - timedelta(days=days)}}
        )

    async def test_not_yet_due(self, db, controller, running_experiment):
        experiment, _ = await running_experiment(test_duration=self.fixed)
        await self.backdate(db, experiment, 6)

        assert await controller.expire_overdue() == []
        assert (await db.ab_tests.find_one({"_id": experiment["_id"]}))["status"] == "active"

    async def test_expires_without_winner(self, db, controller, running_experiment):
        experiment, _ = await running_experiment(test_duration=self.fixed)
        await self.backdate(db, experiment, 8)

        expired = await controller.expire_overdue()

        assert expired == [{"experiment_id": str(experiment["_id"]), "winner": None}]
        stored = await db.ab_tests.find_one({"_id": experiment["_id"]})
        assert stored["status"] == "completed"
        assert stored["winning_variant_id"] is None

        insight = await db.ab_test_insights.find_one({"experiment_id": experiment["_id"]})
        assert insight["insight_type"] == "recommendation"
        assert insight["action_required"] is True

    async def test_expires_with_qualifying_winner(self, db, controller, running_experiment):
        experiment, variants = await running_experiment(test_duration=self.fixed)
        await scenario_counters(controller, variants)
        await self.backdate(db, experiment, 8)

        expired = await controller.expire_overdue()

        assert expired == [{"experiment_id": str(experiment["_id"]), "winner": str(variants[1]["_id"])}]
        stored = await db.ab_tests.find_one({"_id": experiment["_id"]})
        assert stored["winning_variant_id"] == variants[1]["_id"]

    async def test_sequential_tests_never_expire(self, db, controller, running_experiment):
        experiment, _ = await running_experiment()
        await self.backdate(db, experiment, 365)

        assert await controller.expire_overdue() == []


@pytest.mark.asyncio
class TestPerformanceSummary:

    async def test_summary(self, controller, running_experiment):
        finished, variants = await running_experiment(automatic_winner=True)
        await scenario_counters(controller, variants)
        await controller.recompute_significance(finished["_id"])
        await running_experiment()

        summary = await controller.performance_summary("owner-1")

        assert summary["total_tests"] == 2
        assert summary["completed_tests"] == 1
        assert summary["active_tests"] == 1
        assert summary["tests_with_winners"] == 1
        assert summary["total_participants"] == 800
        assert summary["top_performing_tests"][0]["experiment_id"] == str(finished["_id"])
        assert summary["top_performing_tests"][0]["best_metric_value"] == pytest.approx(55.0)

    async def test_other_owners_are_excluded(self, controller, running_experiment):
        await running_experiment(owner_id="someone-else")

        summary = await controller.performance_summary("owner-1")

        assert summary["total_tests"] == 0
        assert summary["average_test_duration_days"] == 0
