"""Objective planning."""

from llamaclick.planner.engine import ObjectivePlanner, step_from_dict, with_start_url
from llamaclick.planner.models import Plan, Step

__all__ = ["Plan", "Step", "ObjectivePlanner", "step_from_dict", "with_start_url"]
