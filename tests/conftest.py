"""Shared fixtures: agent settings tuned for fast tests and a small form site."""

import pytest

from fakes import FORM_URL, FakeBrowser, form_site
from llamaclick.config import AgentConfig


@pytest.fixture
def agent_config():
    return AgentConfig(
        retry_limit=3,
        replan_budget=1,
        action_timeout=2.0,
        session_timeout=10.0,
        backoff_base=0.0,
        backoff_cap=0.0,
        poll_interval=0.01,
        time_between_actions=0.0,
    )


@pytest.fixture
def browser():
    return FakeBrowser(*form_site(), start_url=FORM_URL)
