# School Records Access Control - Policy and Demo Scenarios
# Standard school policy, sample data and scenario runner

from .school_policy import build_school_registry, demo_ownership
from .demo_data import load_demo_data, sample_rows
from .test_scenarios import run_scenarios

__all__ = ['build_school_registry', 'demo_ownership', 'load_demo_data', 'sample_rows', 'run_scenarios']
