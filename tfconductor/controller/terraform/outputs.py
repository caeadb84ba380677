"""Terraform outputs as reported by ``terraform output -json``."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from tfconductor.controller.models.enums import OutputType
from tfconductor.controller.terraform.errors import ParseError


@dataclass(frozen=True)
class Output:
    name: str
    sensitive: bool
    type: OutputType
    value: Any

    def string_value(self) -> str:
        """The value for outputs of type 'string', else an empty string."""
        return self.value if isinstance(self.value, str) else ""

    def number_value(self) -> float:
        if isinstance(self.value, int | float) and not isinstance(self.value, bool):
            return float(self.value)
        return 0.0

    def bool_value(self) -> bool:
        return self.value if isinstance(self.value, bool) else False

    def json_value(self) -> bytes:
        """The value as compact JSON.  Usable for outputs of any type."""
        return json.dumps(self.value, separators=(",", ":")).encode("utf-8")


def _output_type(declared: Any) -> OutputType:
    # 'type' is a plain string for simple types like "bool", and a list whose
    # first element names the kind for complex types: ["object", {...}].
    if isinstance(declared, str):
        return OutputType.parse(declared)
    if isinstance(declared, list) and declared and isinstance(declared[0], str):
        return OutputType.parse(declared[0])
    return OutputType.UNKNOWN


def parse_outputs(raw: bytes | str) -> list[Output]:
    """Parse ``terraform output -json``.  Outputs are sorted by name.

    Raises ``ParseError`` when the document is not the expected JSON object.
    """
    try:
        doc = json.loads(raw)
    except ValueError as exc:
        msg = f"cannot parse Terraform output: {exc}"
        raise ParseError(msg) from exc
    if not isinstance(doc, dict):
        msg = "cannot parse Terraform output: expected a JSON object"
        raise ParseError(msg)

    outputs = []
    for name, item in doc.items():
        if not isinstance(item, dict):
            item = {}
        outputs.append(
            Output(
                name=name,
                sensitive=bool(item.get("sensitive", False)),
                type=_output_type(item.get("type")),
                value=item.get("value"),
            )
        )
    outputs.sort(key=lambda o: o.name)
    return outputs
