"""The narrow terraform client interface the reconciler depends on.

``Harness`` drives the real binary; tests substitute an in-memory double.
Neither the reconciler nor its tests touch subprocess mechanics directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from tfconductor.controller.terraform.options import InitOptions, Options
    from tfconductor.controller.terraform.outputs import Output

NO_DIFF_IN_PLAN = "No change in the terraform plan"
"""Plan text recorded when terraform reports no difference."""


@dataclass(frozen=True)
class PlanResult:
    differs: bool
    plan: str
    """The encoded plan when ``differs``, else ``NO_DIFF_IN_PLAN``."""


@runtime_checkable
class TerraformClient(Protocol):
    async def init(self, opts: InitOptions | None = None) -> None: ...

    async def workspace(self, name: str) -> None:
        """Select the named sub-workspace, creating it if it does not exist."""
        ...

    async def plan(self, opts: Options | None = None) -> PlanResult: ...

    async def apply(self, opts: Options | None = None) -> None: ...

    async def destroy(self, opts: Options | None = None) -> None: ...

    async def outputs(self) -> list[Output]: ...

    async def resources(self) -> list[str]: ...

    async def checksum(self) -> str: ...

    async def delete_current_workspace(self) -> None:
        """Switch to the default sub-workspace and delete the previous one."""
        ...
