from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .errors import ValidationError
from .interfaces import ConversionFunction


@dataclass(frozen=True)
class ToolSpec:
    """A named conversion and the contract of its inputs and output."""

    name: str
    fn: ConversionFunction
    extension: str = "pdf"
    media_type: str = "application/pdf"
    min_inputs: int = 1
    max_inputs: int | None = 1
    download_name: str | None = None
    validate_options: Callable[[dict[str, Any]], None] | None = None

    def default_filename(self, job_id: str) -> str:
        return self.download_name or f"{job_id}.{self.extension}"


class ConversionRegistry:
    def __init__(self, tools: Iterable[ToolSpec] = ()) -> None:
        self._tools: dict[str, ToolSpec] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolSpec) -> ToolSpec:
        if tool.name in self._tools:
            raise ValueError(f"tool {tool.name!r} already registered")
        self._tools[tool.name] = tool
        return tool

    def tool(self, name: str, **kwargs: Any) -> Callable[[ConversionFunction], ConversionFunction]:
        """Decorator form of ``register``."""

        def decorator(fn: ConversionFunction) -> ConversionFunction:
            self.register(ToolSpec(name=name, fn=fn, **kwargs))
            return fn

        return decorator

    def find(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def validate(self, kind: str, options: Any, input_count: int) -> ToolSpec:
        """Check a submission synchronously; raises ValidationError."""
        if not isinstance(kind, str) or not kind:
            raise ValidationError("conversion kind is required")
        tool = self._tools.get(kind)
        if tool is None:
            raise ValidationError(f"unknown conversion kind {kind!r}")
        if not isinstance(options, dict):
            raise ValidationError("options must be a JSON object")
        if input_count < tool.min_inputs:
            raise ValidationError(f"{kind} requires at least {tool.min_inputs} input file(s)")
        if tool.max_inputs is not None and input_count > tool.max_inputs:
            raise ValidationError(f"{kind} accepts at most {tool.max_inputs} input file(s)")
        if tool.validate_options is not None:
            tool.validate_options(options)
        return tool
