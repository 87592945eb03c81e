"""
Shared test fixtures for tierctl tests.

This module provides common fixtures used across all test types:
- Temporary home/state directories
- In-memory provider and state store
- A complete web tier stack (network, security groups, launch template,
  load balancer, target group, listener, autoscaling group)
"""

from pathlib import Path

import pytest

from tierctl.config import reset_config
from tierctl.engine.executor import PlanExecutor
from tierctl.engine.models import Resource
from tierctl.engine.reconciler import Reconciler
from tierctl.engine.state_store import StateStore
from tierctl.providers.memory import MemoryProvider
from tierctl.retry_handler import RetryPolicy
from tierctl.schema import ResourceType

# ============================================================================
# DIRECTORY FIXTURES
# ============================================================================


@pytest.fixture
def temp_home_dir(tmp_path, monkeypatch):
    """Temporary home directory for testing.

    Sets HOME environment variable to temporary directory
    for testing home directory operations without affecting
    real user home directory.
    """
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    monkeypatch.setenv("HOME", str(home_dir))
    return home_dir


@pytest.fixture(autouse=True)
def clean_config_env(monkeypatch):
    """Drop TIERCTL_* variables and the cached config between tests."""
    import os

    for name in list(os.environ):
        if name.startswith("TIERCTL_"):
            monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


# ============================================================================
# ENGINE FIXTURES
# ============================================================================


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    delays: list[float] = []

    def sleep(seconds: float) -> None:
        delays.append(seconds)

    sleep.delays = delays  # type: ignore[attr-defined]
    return sleep


@pytest.fixture
def fast_retry():
    """Retry policy without real delays."""
    return RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def provider():
    return MemoryProvider()


@pytest.fixture
def state(tmp_path) -> StateStore:
    return StateStore(tmp_path / "state.json")


@pytest.fixture
def executor(provider, state, fast_retry, no_sleep) -> PlanExecutor:
    return PlanExecutor(
        provider, state, retry_policy=fast_retry, max_workers=4, ready_timeout=1.0, sleep=no_sleep
    )


@pytest.fixture
def reconciler(provider, state, executor) -> Reconciler:
    return Reconciler(provider, state, executor)


# ============================================================================
# STACK FIXTURES
# ============================================================================


def build_web_tier(
    image_name_filter: str = "al2023-ami-*",
    instance_type: str = "t3.micro",
    lb_name: str = "web",
    min_size: int = 2,
    max_size: int = 10,
    grace_period: int = 300,
) -> list[Resource]:
    """Desired resources of a load-balanced, auto-scaling web tier."""
    return [
        Resource(
            "ami",
            ResourceType.IMAGE_LOOKUP,
            {"owners": ["amazon"], "name_filter": image_name_filter},
        ),
        Resource("vpc", ResourceType.NETWORK, {"cidr_block": "10.0.0.0/16"}),
        Resource(
            "subnet_a",
            ResourceType.SUBNET,
            {"network_id": "${vpc.id}", "cidr_block": "10.0.1.0/24", "availability_zone": "a"},
        ),
        Resource(
            "subnet_b",
            ResourceType.SUBNET,
            {"network_id": "${vpc.id}", "cidr_block": "10.0.2.0/24", "availability_zone": "b"},
        ),
        Resource("web_sg", ResourceType.SECURITY_GROUP, {"name": "web", "network_id": "${vpc.id}"}),
        Resource(
            "web_http",
            ResourceType.SECURITY_GROUP_RULE,
            {
                "security_group_id": "${web_sg.id}",
                "direction": "ingress",
                "protocol": "tcp",
                "from_port": 80,
                "to_port": 80,
                "cidr_blocks": ["0.0.0.0/0"],
            },
        ),
        Resource(
            "web_lt",
            ResourceType.LAUNCH_TEMPLATE,
            {
                "image_id": "${ami.image_id}",
                "instance_type": instance_type,
                "security_group_ids": ["${web_sg.id}"],
            },
        ),
        Resource(
            "web_lb",
            ResourceType.LOAD_BALANCER,
            {
                "name": lb_name,
                "subnet_ids": ["${subnet_a.id}", "${subnet_b.id}"],
                "security_group_ids": ["${web_sg.id}"],
            },
        ),
        Resource(
            "web_tg",
            ResourceType.TARGET_GROUP,
            {"name": "web", "port": 80, "protocol": "HTTP", "network_id": "${vpc.id}"},
        ),
        Resource(
            "web_listener",
            ResourceType.LISTENER,
            {"load_balancer_id": "${web_lb.id}", "port": 80, "target_group_id": "${web_tg.id}"},
        ),
        Resource(
            "web_asg",
            ResourceType.AUTOSCALING_GROUP,
            {
                "min_size": min_size,
                "max_size": max_size,
                "health_check_grace_period": grace_period,
                "launch_template_id": "${web_lt.id}",
                "subnet_ids": ["${subnet_a.id}", "${subnet_b.id}"],
                "target_group_ids": ["${web_tg.id}"],
            },
        ),
    ]


@pytest.fixture
def web_tier() -> list[Resource]:
    return build_web_tier()


@pytest.fixture
def make_web_tier():
    """Factory for web tier variants (changed image, bounds, ...)."""
    return build_web_tier


@pytest.fixture
def stack_file(tmp_path) -> Path:
    """A stack file describing a small web tier with one policy."""
    path = tmp_path / "web.toml"
    path.write_text(
        """
[[resource]]
id = "vpc"
type = "network"
[resource.attributes]
cidr_block = "10.0.0.0/16"

[[resource]]
id = "web_sg"
type = "security_group"
[resource.attributes]
name = "web"
network_id = "${vpc.id}"

[[resource]]
id = "web_lt"
type = "launch_template"
[resource.attributes]
image_id = "ami-12345678"
instance_type = "t3.micro"
security_group_ids = ["${web_sg.id}"]

[[resource]]
id = "web_asg"
type = "autoscaling_group"
[resource.attributes]
min_size = 2
max_size = 10
health_check_grace_period = 0
launch_template_id = "${web_lt.id}"

[[policy]]
group = "web_asg"
metric = "cpu_utilization"
target_value = 10.0
"""
    )
    return path
