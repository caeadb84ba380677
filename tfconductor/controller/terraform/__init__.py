"""Process harness for the terraform CLI."""

from tfconductor.controller.terraform.base import NO_DIFF_IN_PLAN, PlanResult, TerraformClient
from tfconductor.controller.terraform.harness import Harness
from tfconductor.controller.terraform.lock import CacheLock, NullLock, PluginCacheLock
from tfconductor.controller.terraform.options import InitOptions, Options
from tfconductor.controller.terraform.outputs import Output

__all__ = [
    "NO_DIFF_IN_PLAN",
    "CacheLock",
    "Harness",
    "InitOptions",
    "NullLock",
    "Options",
    "Output",
    "PlanResult",
    "PluginCacheLock",
    "TerraformClient",
]
