import pytest

from msr import db
from msr.catalog import UnknownService
from msr.docker_ops import RuntimeUnavailable
from msr.models import ActionResult, UpgradeAction
from msr.orchestrator import UpgradeState


def _states_for(orchestrator, identity):
    return [s for i, s in orchestrator.transitions if i == identity]


# --- single service ---


def test_successful_upgrade_stays_upgrading_until_settle(fleet, runtime, scheduler, version_source):
    orch = fleet.orchestrator

    outcome = orch.upgrade_service("radarr", UpgradeAction.PULL_IMAGE)

    assert outcome.success
    assert runtime.calls_named("upgrade_service") == [("upgrade_service", "radarr", UpgradeAction.PULL_IMAGE)]
    assert fleet.store.upgrade_status("radarr").is_upgrading is True
    assert orch.state("radarr") == UpgradeState.UPGRADING

    scheduler.advance(2.9)
    assert fleet.store.upgrade_status("radarr").is_upgrading is True

    scheduler.advance(0.1)
    assert fleet.store.upgrade_status("radarr").is_upgrading is False
    assert orch.state("radarr") == UpgradeState.IDLE
    assert version_source.calls == 1
    assert db.upgrade_history(service_name="radarr")[0]["outcome"] == "success"


def test_failed_result_clears_flag_immediately(fleet, runtime, scheduler):
    runtime.upgrade_results["radarr"] = ActionResult.failed("manifest unknown")

    outcome = fleet.orchestrator.upgrade_service("radarr")

    assert not outcome.success
    assert outcome.error == "manifest unknown"
    status = fleet.store.upgrade_status("radarr")
    assert status.is_upgrading is False
    assert status.last_error == "manifest unknown"
    assert _states_for(fleet.orchestrator, "radarr") == [UpgradeState.UPGRADING, UpgradeState.FAILED, UpgradeState.IDLE]
    assert scheduler.pending == []
    history = db.upgrade_history(service_name="radarr")
    assert history[0]["outcome"] == "failed"
    assert history[0]["error"] == "manifest unknown"


def test_runtime_exception_is_surfaced_and_retry_possible(fleet, runtime):
    runtime.upgrade_results["radarr"] = RuntimeUnavailable("engine down")

    outcome = fleet.orchestrator.upgrade_service("radarr")

    assert not outcome.success
    assert "engine down" in outcome.error
    assert fleet.store.upgrade_status("radarr").is_upgrading is False

    runtime.upgrade_results["radarr"] = ActionResult.ok()
    assert fleet.orchestrator.upgrade_service("radarr").success
    assert fleet.store.upgrade_status("radarr").last_error is None


def test_second_request_while_upgrading_is_rejected(fleet, runtime, scheduler):
    assert fleet.orchestrator.upgrade_service("radarr").success

    again = fleet.orchestrator.upgrade_service("radarr", UpgradeAction.REBUILD_CONTAINER)

    assert again.rejected and not again.success
    assert len(runtime.calls_named("upgrade_service")) == 1

    scheduler.advance(3)
    assert fleet.orchestrator.upgrade_service("radarr").success


def test_settle_clears_flag_even_if_recheck_fails(fleet, scheduler, version_source, monkeypatch):
    def boom():
        raise RuntimeError("tracker exploded")

    monkeypatch.setattr(fleet.tracker, "check_for_updates", boom)
    fleet.orchestrator.upgrade_service("emby")

    scheduler.advance(3)

    assert fleet.store.upgrade_status("emby").is_upgrading is False


def test_unknown_service_raises(fleet):
    with pytest.raises(UnknownService):
        fleet.orchestrator.upgrade_service("plex")


def test_action_is_passed_through(fleet, runtime):
    fleet.orchestrator.upgrade_service("emby", "rebuild_container")
    assert runtime.calls_named("upgrade_service") == [("upgrade_service", "emby", UpgradeAction.REBUILD_CONTAINER)]


# --- fleet-wide ---


def test_global_upgrade_isolates_failures(fleet, runtime, scheduler):
    runtime.upgrade_results["emby"] = RuntimeError("emby unreachable")

    result = fleet.orchestrator.global_upgrade()

    assert result.accepted and result.succeeded
    assert result.outcomes["radarr"].success
    assert result.outcomes["prowlarr"].success
    assert not result.outcomes["emby"].success
    assert result.failed_services == ["emby"]
    assert runtime.calls_named("restart_all") == [("restart_all",)]
    assert fleet.orchestrator.is_global_upgrading is True

    scheduler.advance(5)

    assert fleet.orchestrator.is_global_upgrading is False
    for identity in ("radarr", "prowlarr"):
        assert _states_for(fleet.orchestrator, identity) == [UpgradeState.UPGRADING, UpgradeState.IDLE]
        assert fleet.store.upgrade_status(identity).is_upgrading is False
    assert fleet.store.upgrade_status("emby").last_error is not None


def test_global_upgrade_call_order(fleet, runtime, scheduler):
    fleet.orchestrator.global_upgrade()

    names = [c[0] for c in runtime.calls]
    assert names[0] == "upgrade_platform"
    assert names[-1] == "restart_all"
    assert names.count("upgrade_service") == 3


def test_platform_failure_aborts_before_any_service(fleet, runtime, scheduler):
    runtime.platform_result = ActionResult.failed("git pull failed")

    result = fleet.orchestrator.global_upgrade()

    assert result.accepted and not result.succeeded
    assert result.platform_error == "git pull failed"
    assert runtime.calls_named("upgrade_service") == []
    assert runtime.calls_named("restart_all") == []
    assert fleet.orchestrator.is_global_upgrading is False
    assert scheduler.pending == []


def test_platform_exception_also_aborts(fleet, runtime):
    runtime.platform_result = RuntimeUnavailable("no daemon")

    result = fleet.orchestrator.global_upgrade()

    assert "no daemon" in result.platform_error
    assert runtime.calls_named("upgrade_service") == []
    assert fleet.orchestrator.is_global_upgrading is False


def test_second_global_upgrade_is_rejected_without_side_effects(fleet, runtime, scheduler):
    fleet.orchestrator.global_upgrade()
    calls_before = list(runtime.calls)

    second = fleet.orchestrator.global_upgrade()

    assert second.accepted is False
    assert runtime.calls == calls_before

    scheduler.advance(5)
    assert fleet.orchestrator.global_upgrade().accepted is True


def test_restart_failure_still_verifies(fleet, runtime, scheduler, version_source):
    runtime.restart_result = RuntimeUnavailable("restart failed")

    result = fleet.orchestrator.global_upgrade()

    assert "restart failed" in result.restart_error
    scheduler.advance(5)
    assert fleet.orchestrator.is_global_upgrading is False
    assert version_source.calls >= 1


def test_verify_failure_still_releases_flag(fleet, scheduler, monkeypatch):
    fleet.orchestrator.global_upgrade()
    scheduler.advance(3)  # per-service settles

    def boom():
        raise RuntimeError("verify exploded")

    monkeypatch.setattr(fleet.tracker, "check_for_updates", boom)
    scheduler.advance(2)

    assert fleet.orchestrator.is_global_upgrading is False


def test_global_upgrade_skips_services_already_upgrading(fleet, runtime, scheduler):
    fleet.orchestrator.upgrade_service("radarr")

    result = fleet.orchestrator.global_upgrade()

    assert result.outcomes["radarr"].rejected
    assert result.outcomes["emby"].success
    assert len([c for c in runtime.calls_named("upgrade_service") if c[1] == "radarr"]) == 1


# --- interleaved requests ---


def test_request_during_failure_bookkeeping_is_rejected(fleet, runtime, monkeypatch):
    runtime.upgrade_results["radarr"] = ActionResult.failed("manifest unknown")
    real_record = db.record_upgrade
    nested = []

    def record_and_retry(service_name, action, outcome, error=None):
        real_record(service_name, action, outcome, error)
        if outcome == "failed" and not nested:
            nested.append(fleet.orchestrator.upgrade_service("radarr"))

    monkeypatch.setattr(db, "record_upgrade", record_and_retry)

    first = fleet.orchestrator.upgrade_service("radarr")

    assert not first.success
    assert nested[0].rejected
    status = fleet.store.upgrade_status("radarr")
    assert status.is_upgrading is False
    assert status.last_error == "manifest unknown"


def test_failed_call_leaves_a_newer_upgrade_alone(fleet, runtime, scheduler, monkeypatch):
    runtime.upgrade_results["radarr"] = ActionResult.failed("manifest unknown")
    real_finish = fleet.store.finish_upgrade
    nested = []

    def finish_then_start_another(identity, error=None):
        st = real_finish(identity, error)
        if not nested:
            runtime.upgrade_results["radarr"] = ActionResult.ok()
            nested.append(fleet.orchestrator.upgrade_service("radarr"))
        return st

    monkeypatch.setattr(fleet.store, "finish_upgrade", finish_then_start_another)

    first = fleet.orchestrator.upgrade_service("radarr")

    assert not first.success
    assert nested[0].success
    # the second upgrade is still settling and still owns the flag
    assert fleet.store.upgrade_status("radarr").is_upgrading is True
    assert fleet.store.upgrade_status("radarr").last_error is None
    assert fleet.orchestrator.state("radarr") == UpgradeState.UPGRADING
    assert fleet.orchestrator.upgrade_service("radarr").rejected

    scheduler.advance(3)
    assert fleet.store.upgrade_status("radarr").is_upgrading is False
    assert fleet.orchestrator.state("radarr") == UpgradeState.IDLE


def test_unexpected_error_after_claim_releases_flag(fleet, scheduler, monkeypatch):
    def broken_scheduler(delay_s, fn):
        raise RuntimeError("timer pool exhausted")

    monkeypatch.setattr(fleet.orchestrator.scheduler, "call_later", broken_scheduler)

    with pytest.raises(RuntimeError):
        fleet.orchestrator.upgrade_service("radarr")

    status = fleet.store.upgrade_status("radarr")
    assert status.is_upgrading is False
    assert status.last_error == "Upgrade aborted"
    assert fleet.orchestrator.state("radarr") == UpgradeState.IDLE
