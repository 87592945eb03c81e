"""Tests for the stack file loader."""

import pytest

from tierctl.autoscaling.models import MetricType
from tierctl.errors import StackFileError
from tierctl.schema import ResourceType
from tierctl.stack_file import load_stack, parse_stack


class TestLoadStack:
    """Reading TOML stack files."""

    def test_loads_resources_and_policies(self, stack_file):
        stack = load_stack(stack_file)
        assert [r.id for r in stack.resources] == ["vpc", "web_sg", "web_lt", "web_asg"]
        assert stack.resources[3].type == ResourceType.AUTOSCALING_GROUP
        assert stack.resources[1].attributes["network_id"] == "${vpc.id}"
        [policy] = stack.policies
        assert policy.group_id == "web_asg"
        assert policy.metric == MetricType.CPU_UTILIZATION
        assert policy.target_value == 10.0

    def test_missing_file(self, tmp_path):
        with pytest.raises(StackFileError, match="not found"):
            load_stack(tmp_path / "absent.toml")

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[[resource]\n")
        with pytest.raises(StackFileError, match="Invalid TOML"):
            load_stack(path)


class TestParseStack:
    """Validation of parsed documents."""

    def test_defaults(self):
        stack = parse_stack(
            {
                "resource": [
                    {"id": "web_asg", "type": "autoscaling_group", "depends_on": ["vpc"]},
                    {"id": "vpc", "type": "network"},
                ],
                "policy": [{"group": "web_asg"}],
            },
            default_target=42.0,
        )
        assert stack.resources[0].depends_on == frozenset({"vpc"})
        assert stack.resources[0].create_before_destroy is False
        assert stack.policies[0].target_value == 42.0

    @pytest.mark.parametrize(
        "data,message",
        [
            ({"resources": []}, "Unknown top-level keys"),
            ({"resource": [{"type": "network"}]}, "'id' is required"),
            ({"resource": [{"id": "x", "type": "bucket"}]}, "Unknown resource type 'bucket'"),
            ({"resource": [{"id": "x", "type": "instance"}]}, "managed by autoscaling groups"),
            ({"resource": [{"id": "x", "type": "network", "extra": 1}]}, "unknown keys extra"),
            ({"resource": [{"id": "x", "type": "network", "depends_on": "vpc"}]}, "list of ids"),
            (
                {"resource": [{"id": "x", "type": "network", "create_before_destroy": "yes"}]},
                "must be a boolean",
            ),
            ({"resource": [{"id": "x", "type": "network"}], "policy": [{"group": "x"}]}, "not an autoscaling_group"),
            (
                {
                    "resource": [{"id": "g", "type": "autoscaling_group"}],
                    "policy": [{"group": "g", "metric": "disk"}],
                },
                "policy #1",
            ),
            (
                {
                    "resource": [{"id": "g", "type": "autoscaling_group"}],
                    "policy": [{"group": "g", "target_value": 0}],
                },
                "target_value must be positive",
            ),
        ],
    )
    def test_rejects(self, data, message):
        with pytest.raises(StackFileError, match=message):
            parse_stack(data)
