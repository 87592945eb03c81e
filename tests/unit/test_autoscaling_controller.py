"""Tests for the autoscaling controller and service."""

import logging
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import Mock

import pytest

from tierctl.autoscaling.controller import AutoscalingController
from tierctl.autoscaling.models import (
    ControllerPhase,
    MetricType,
    ScalableGroup,
    TargetTrackingPolicy,
)
from tierctl.autoscaling.service import AutoscalingService
from tierctl.autoscaling.sources import (
    JsonFileSignals,
    MetricSource,
    StaticHealthProbe,
    StaticMetricSource,
)
from tierctl.config import AutoscalingConfig
from tierctl.engine.models import ApplyResult
from tierctl.engine.reconciler import Reconciler
from tierctl.errors import ConfigError, MetricUnavailableError

CPU = MetricType.CPU_UTILIZATION
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def metrics():
    return StaticMetricSource()


@pytest.fixture
def mock_reconciler():
    """Reconciler double whose group capacity follows set_desired_capacity."""
    reconciler = Mock(spec=Reconciler)
    group = {"capacity": 4}

    def get_group(group_id):
        members = [f"m{i}" for i in range(group["capacity"])]
        return ScalableGroup(
            group_id=group_id,
            desired_capacity=group["capacity"],
            min_size=2,
            max_size=10,
            member_ids=members,
            health_check_grace_period=0,
            launched_at=dict.fromkeys(members, T0 - timedelta(hours=1)),
        )

    def set_desired_capacity(group_id, capacity, remove_member_ids=None, cancel_event=None):
        group["capacity"] = capacity
        return ApplyResult()

    reconciler.get_group.side_effect = get_group
    reconciler.set_desired_capacity.side_effect = set_desired_capacity
    return reconciler


class TestEvaluateWithReconciler:
    """End to end against the memory provider."""

    def test_scale_out_then_cooldown(self, reconciler, state, web_tier, metrics):
        reconciler.reconcile(web_tier)
        now = datetime.now(UTC) + timedelta(hours=1)
        metrics.set_value("web_asg", CPU, 40.0)
        controller = AutoscalingController(
            reconciler, TargetTrackingPolicy("web_asg", CPU, 10.0), metrics
        )

        decision = controller.evaluate_once(now)

        assert decision.action == "scale_out"
        assert decision.target_capacity == 8
        assert len(state.members_of("web_asg")) == 8
        assert reconciler.get_group("web_asg").desired_capacity == 8
        assert controller.phase == ControllerPhase.COOLING

        metrics.set_value("web_asg", CPU, 95.0)
        held = controller.evaluate_once(now + timedelta(seconds=10))
        assert held.action == "maintain"
        assert "cooldown" in held.reason
        assert len(state.members_of("web_asg")) == 8

    def test_missing_metric_holds_capacity(self, reconciler, state, web_tier, metrics, caplog):
        reconciler.reconcile(web_tier)
        metrics.mark_unavailable("web_asg")
        controller = AutoscalingController(
            reconciler, TargetTrackingPolicy("web_asg", CPU, 10.0), metrics
        )

        with caplog.at_level(logging.WARNING):
            decision = controller.evaluate_once(datetime.now(UTC) + timedelta(hours=1))

        assert decision is None
        assert "unavailable" in caplog.text
        assert len(state.members_of("web_asg")) == 2
        assert controller.phase == ControllerPhase.IDLE

    def test_unapplied_group(self, reconciler, metrics):
        controller = AutoscalingController(reconciler, TargetTrackingPolicy("web_asg"), metrics)
        with pytest.raises(ConfigError):
            controller.evaluate_once()


class TestGracePeriod:
    """Newly launched members are left out of the average."""

    def test_cold_members_do_not_dilute_average(self, metrics):
        reconciler = Mock(spec=Reconciler)
        reconciler.get_group.return_value = ScalableGroup(
            group_id="web_asg",
            desired_capacity=4,
            min_size=2,
            max_size=10,
            member_ids=["old1", "old2", "new1", "new2"],
            health_check_grace_period=300,
            launched_at={
                "old1": T0 - timedelta(hours=1),
                "old2": T0 - timedelta(hours=1),
                "new1": T0 - timedelta(seconds=30),
                "new2": T0 - timedelta(seconds=30),
            },
        )
        metrics.set_member_values(
            "web_asg", CPU, {"old1": 50.0, "old2": 50.0, "new1": 0.0, "new2": 0.0}
        )
        controller = AutoscalingController(
            reconciler, TargetTrackingPolicy("web_asg", CPU, 50.0), metrics
        )

        decision = controller.evaluate_once(T0)

        assert decision.observed_value == 50.0
        assert decision.action == "maintain"
        reconciler.set_desired_capacity.assert_not_called()


class TestCooldowns:
    """Scale-out and scale-in cooldowns."""

    def test_scale_in_blocked_after_recent_scale_out(self, mock_reconciler, metrics):
        controller = AutoscalingController(
            mock_reconciler,
            TargetTrackingPolicy("web_asg", CPU, 50.0),
            metrics,
            config=AutoscalingConfig(scale_out_cooldown=60, scale_in_cooldown=300),
        )
        metrics.set_value("web_asg", CPU, 100.0)
        assert controller.evaluate_once(T0).target_capacity == 8

        metrics.set_value("web_asg", CPU, 10.0)
        held = controller.evaluate_once(T0 + timedelta(seconds=120))
        assert held.action == "maintain"
        assert "scale_in cooldown" in held.reason
        assert mock_reconciler.set_desired_capacity.call_count == 1

        released = controller.evaluate_once(T0 + timedelta(seconds=301))
        assert released.action == "scale_in"
        assert mock_reconciler.set_desired_capacity.call_count == 2

    def test_scale_out_allowed_after_short_cooldown(self, mock_reconciler, metrics):
        controller = AutoscalingController(
            mock_reconciler,
            TargetTrackingPolicy("web_asg", CPU, 50.0),
            metrics,
            config=AutoscalingConfig(scale_out_cooldown=60, scale_in_cooldown=300),
        )
        metrics.set_value("web_asg", CPU, 75.0)
        controller.evaluate_once(T0)  # 4 -> 6
        decision = controller.evaluate_once(T0 + timedelta(seconds=61))  # 6 -> 9
        assert decision.action == "scale_out"
        assert decision.target_capacity == 9

    def test_cooldown_remaining(self, mock_reconciler, metrics):
        controller = AutoscalingController(
            mock_reconciler, TargetTrackingPolicy("web_asg"), metrics
        )
        assert controller.cooldown_remaining("scale_in", T0) == 0.0
        controller.last_change_at = T0
        controller.last_scale_out_at = T0
        assert controller.cooldown_remaining("scale_out", T0 + timedelta(seconds=30)) == 30.0
        assert controller.cooldown_remaining("scale_in", T0 + timedelta(seconds=30)) == 270.0
        assert controller.cooldown_remaining("maintain", T0) == 0.0

    def test_unhealthy_member_removed_first(self, mock_reconciler, metrics):
        probe = StaticHealthProbe()
        probe.set_unhealthy("m3")
        controller = AutoscalingController(
            mock_reconciler, TargetTrackingPolicy("web_asg", CPU, 50.0), metrics, probe
        )
        metrics.set_value("web_asg", CPU, 25.0)
        decision = controller.evaluate_once(T0)
        # 3 eligible members at 25 -> ceil(4 * 0.5) = 2
        assert decision.remove_member_ids == ["m3", "m0"]
        mock_reconciler.set_desired_capacity.assert_called_once_with("web_asg", 2, ["m3", "m0"])


class TestLoop:
    """Background thread lifecycle."""

    def test_start_and_stop(self, mock_reconciler, metrics):
        metrics.set_value("web_asg", CPU, 50.0)
        controller = AutoscalingController(
            mock_reconciler,
            TargetTrackingPolicy("web_asg", CPU, 50.0),
            metrics,
            config=AutoscalingConfig(evaluation_interval=0.01),
        )
        controller.start()
        try:
            deadline = time.monotonic() + 5
            while controller.last_decision is None and time.monotonic() < deadline:
                time.sleep(0.01)
            assert controller.is_running
            with pytest.raises(RuntimeError):
                controller.start()
        finally:
            controller.stop(timeout=5)
        assert not controller.is_running
        assert controller.last_decision.action == "maintain"

    def test_loop_survives_evaluation_errors(self, reconciler, metrics):
        controller = AutoscalingController(
            reconciler,
            TargetTrackingPolicy("web_asg"),
            metrics,
            config=AutoscalingConfig(evaluation_interval=0.01),
        )
        controller.start()
        time.sleep(0.05)
        assert controller.is_running
        controller.stop(timeout=5)

    def _wait_for_evaluations(self, reconciler, count=2):
        deadline = time.monotonic() + 5
        while reconciler.get_group.call_count < count and time.monotonic() < deadline:
            time.sleep(0.01)

    def test_loop_survives_malformed_signals(self, mock_reconciler, tmp_path):
        path = tmp_path / "signals.json"
        path.write_text('{"metrics": {"web_asg": {"cpu_utilization": "n/a"}}}')
        controller = AutoscalingController(
            mock_reconciler,
            TargetTrackingPolicy("web_asg", CPU, 50.0),
            JsonFileSignals(path),
            config=AutoscalingConfig(evaluation_interval=0.01),
        )
        controller.start()
        try:
            self._wait_for_evaluations(mock_reconciler)
            assert controller.is_running
        finally:
            controller.stop(timeout=5)
        assert mock_reconciler.get_group.call_count >= 2
        mock_reconciler.set_desired_capacity.assert_not_called()

    def test_loop_survives_unexpected_errors(self, mock_reconciler, caplog):
        source = Mock(spec=MetricSource)
        source.member_metrics.side_effect = RuntimeError("backend exploded")
        controller = AutoscalingController(
            mock_reconciler,
            TargetTrackingPolicy("web_asg", CPU, 50.0),
            source,
            config=AutoscalingConfig(evaluation_interval=0.01),
        )
        with caplog.at_level(logging.ERROR):
            controller.start()
            try:
                self._wait_for_evaluations(mock_reconciler)
                assert controller.is_running
            finally:
                controller.stop(timeout=5)
        assert source.member_metrics.call_count >= 2
        assert "backend exploded" in caplog.text
        assert controller.phase == ControllerPhase.IDLE


class TestService:
    """Supervising several controllers."""

    def test_duplicate_policy(self, reconciler, metrics):
        policies = [TargetTrackingPolicy("web_asg"), TargetTrackingPolicy("web_asg", target_value=20)]
        with pytest.raises(ConfigError, match="More than one"):
            AutoscalingService(reconciler, policies, metrics)

    def test_evaluate_all_isolates_groups(self, reconciler, web_tier, metrics, caplog):
        reconciler.reconcile(web_tier)
        metrics.set_value("web_asg", CPU, 40.0)
        service = AutoscalingService(
            reconciler,
            [TargetTrackingPolicy("missing_asg"), TargetTrackingPolicy("web_asg", CPU, 10.0)],
            metrics,
        )

        service.evaluate_all(datetime.now(UTC) + timedelta(hours=1))

        assert "missing_asg" in caplog.text
        assert reconciler.get_group("web_asg").desired_capacity == 8
        status = {s.group_id: s for s in service.get_status()}
        assert status["web_asg"].last_action == "scale_out"
        assert status["missing_asg"].last_action is None
        assert not status["web_asg"].running

    def test_evaluate_all_logs_state_errors(self, reconciler, state, web_tier, metrics, caplog):
        reconciler.reconcile(web_tier)
        state.path.write_text("{not json")
        service = AutoscalingService(reconciler, [TargetTrackingPolicy("web_asg")], metrics)

        service.evaluate_all(datetime.now(UTC))

        assert "Failed to read state file" in caplog.text


class TestJsonFileSignals:
    """Signals file used by the CLI."""

    def test_group_and_member_values(self, tmp_path):
        path = tmp_path / "signals.json"
        path.write_text(
            '{"metrics": {"web_asg": {"cpu_utilization": 70, "network_in": {"m0": 5}}},'
            ' "health": {"m1": false}}'
        )
        signals = JsonFileSignals(path)
        assert signals.member_metrics("web_asg", CPU, ["m0", "m1"]) == {"m0": 70.0, "m1": 70.0}
        assert signals.member_metrics("web_asg", MetricType.NETWORK_IN, ["m0", "m1"]) == {"m0": 5.0}
        [signal] = signals.health_signals("web_asg", ["m0", "m1"])
        assert signal.member_id == "m1" and not signal.healthy

    def test_missing_metric(self, tmp_path):
        signals = JsonFileSignals(tmp_path / "absent.json")
        with pytest.raises(MetricUnavailableError):
            signals.member_metrics("web_asg", CPU, ["m0"])

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "signals.json"
        path.write_text("{")
        with pytest.raises(ConfigError):
            JsonFileSignals(path).health_signals("web_asg", [])

    def test_non_numeric_reading_is_unavailable(self, tmp_path, mock_reconciler):
        path = tmp_path / "signals.json"
        path.write_text('{"metrics": {"web_asg": {"cpu_utilization": "n/a"}}}')
        with pytest.raises(MetricUnavailableError, match="Non-numeric"):
            JsonFileSignals(path).member_metrics("web_asg", CPU, ["m0"])

        controller = AutoscalingController(
            mock_reconciler, TargetTrackingPolicy("web_asg", CPU, 50.0), JsonFileSignals(path)
        )
        assert controller.evaluate_once(T0) is None
        mock_reconciler.set_desired_capacity.assert_not_called()

    @pytest.mark.parametrize(
        "content",
        [
            '{"metrics": {"web_asg": 5}}',
            '{"metrics": ["web_asg"]}',
            '{"metrics": {"web_asg": {"cpu_utilization": {"m0": null}}}}',
            '{"metrics": {"web_asg": {"cpu_utilization": "nan"}}}',
        ],
    )
    def test_malformed_metrics_are_unavailable(self, tmp_path, content):
        path = tmp_path / "signals.json"
        path.write_text(content)
        with pytest.raises(MetricUnavailableError):
            JsonFileSignals(path).member_metrics("web_asg", CPU, ["m0"])

    def test_non_object_health_section(self, tmp_path):
        path = tmp_path / "signals.json"
        path.write_text('{"health": ["m0"]}')
        with pytest.raises(ConfigError, match="Health section"):
            JsonFileSignals(path).health_signals("web_asg", ["m0"])
