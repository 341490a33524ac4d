"""
Per-run configuration.

A graph declares the parameters it recognizes (the built-in engine
parameters plus any the workflow adds). ConfigResolver turns call-site
overrides, the process environment and the declared defaults into an
immutable RunConfig, once per run.
"""

from typing import Annotated, Any, Dict, Iterable, List, Literal, Mapping, Optional
from dataclasses import dataclass
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, TypeAdapter, ValidationError, create_model
import json
import logging
import os
import re

from stategraph.config import settings
from stategraph.engine.errors import ConfigError


logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def env_var_name(name: str, prefix: str = "") -> str:
    """
    Map a parameter name to its environment variable.

    "max_iterations", "maxIterations" and "max-iterations" all map to
    "MAX_ITERATIONS" (with the prefix prepended).
    """
    snake = _CAMEL_BOUNDARY.sub("_", name)
    snake = re.sub(r"[^0-9A-Za-z]+", "_", snake).strip("_")
    return f"{prefix}{snake.upper()}"


class RunConfig(BaseModel):
    """
    Immutable, resolved parameters of one run.

    Concrete subclasses are generated per graph by ConfigResolver, with one
    field per declared parameter.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", arbitrary_types_allowed=True)

    def get(self, name: str, default: Any = None) -> Any:
        if name in type(self).model_fields:
            return getattr(self, name)
        return default

    def __getitem__(self, name: str) -> Any:
        if name not in type(self).model_fields:
            raise KeyError(name)
        return getattr(self, name)

    def __contains__(self, name: object) -> bool:
        return name in type(self).model_fields

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


@dataclass(frozen=True)
class ConfigParam:
    """
    Declaration of a recognized run parameter.

    Attributes:
        name: Parameter name (a Python identifier)
        type: Annotation used to validate and coerce values
        default: Value used when neither an override nor the environment sets it
        env: Explicit environment variable name (derived from name if omitted)
        description: Human-readable description
    """

    name: str
    type: Any = Any
    default: Any = None
    env: Optional[str] = None
    description: str = ""

    def __post_init__(self):
        if not self.name.isidentifier() or self.name.startswith(("_", "model_")):
            raise ConfigError(f"Invalid config parameter name '{self.name}'")
        if hasattr(RunConfig, self.name):
            raise ConfigError(
                f"Config parameter name '{self.name}' clashes with a RunConfig attribute"
            )

    def env_name(self, prefix: str = "") -> str:
        return self.env or env_var_name(self.name, prefix)


def builtin_params() -> List[ConfigParam]:
    """The engine's own parameters, with defaults taken from Settings."""
    return [
        ConfigParam("max_iterations", Annotated[int, Field(ge=1)], settings.MAX_ITERATIONS,
                    description="Hard cap on routing iterations per run"),
        ConfigParam("node_timeout", Optional[PositiveFloat], settings.NODE_TIMEOUT,
                    description="Seconds allowed for one node attempt"),
        ConfigParam("run_timeout", Optional[PositiveFloat], settings.RUN_TIMEOUT,
                    description="Seconds allowed for the whole run"),
        ConfigParam("max_attempts", Annotated[int, Field(ge=1)], settings.MAX_ATTEMPTS,
                    description="Invocation attempts for nodes raising TransientError"),
        ConfigParam("retry_backoff", Annotated[float, Field(ge=0)], settings.RETRY_BACKOFF,
                    description="Base delay in seconds before a retry"),
        ConfigParam("retry_backoff_max", Annotated[float, Field(ge=0)], settings.RETRY_BACKOFF_MAX,
                    description="Upper bound of the retry delay"),
        ConfigParam("event_buffer_size", Annotated[int, Field(ge=1)], settings.EVENT_BUFFER_SIZE,
                    description="Events buffered per stream subscriber"),
        ConfigParam("backpressure", Literal["drop_oldest", "block"], settings.BACKPRESSURE,
                    description="What publishing does when a subscriber buffer is full"),
        ConfigParam("event_block_timeout", Annotated[float, Field(ge=0)], settings.EVENT_BLOCK_TIMEOUT,
                    description="Seconds to wait for buffer space under 'block'"),
        ConfigParam("strict_routing", bool, settings.STRICT_ROUTING,
                    description="Treat more than one matching conditional edge as an error"),
    ]


BUILTIN_PARAM_NAMES = frozenset(p.name for p in builtin_params())


class ConfigResolver:
    """
    Resolves RunConfig instances for one graph.

    Precedence per parameter: call-site override, then environment
    variable, then declared default. Unknown override keys are ignored.
    """

    def __init__(self, params: Iterable[ConfigParam], env_prefix: str = "", name: str = "RunConfig"):
        self.params: Dict[str, ConfigParam] = {}
        for param in params:
            self.params[param.name] = param
        self.env_prefix = env_prefix
        self.model = create_model(
            name,
            __base__=RunConfig,
            **{p.name: (p.type, p.default) for p in self.params.values()},
        )

    def resolve(
        self,
        overrides: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> RunConfig:
        """
        Build the RunConfig for one run.

        Args:
            overrides: Call-site values, highest priority
            environ: Environment to read (defaults to os.environ)

        Returns:
            A frozen RunConfig with every declared parameter set

        Raises:
            ConfigError: A value does not fit its parameter type
        """
        overrides = dict(overrides or {})
        environ = os.environ if environ is None else environ

        unknown = set(overrides) - set(self.params)
        if unknown:
            logger.debug(f"Ignoring unknown config overrides: {sorted(unknown)}")

        values: Dict[str, Any] = {}
        for name, param in self.params.items():
            if name in overrides:
                values[name] = overrides[name]
                continue
            env_name = param.env_name(self.env_prefix)
            raw = environ.get(env_name)
            if raw is not None and raw != "":
                values[name] = self._from_env(param, env_name, raw)
            else:
                values[name] = param.default

        try:
            return self.model(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid run configuration: {e}") from e

    def _from_env(self, param: ConfigParam, env_name: str, raw: str) -> Any:
        adapter = TypeAdapter(param.type)
        try:
            return adapter.validate_python(raw)
        except ValidationError:
            pass
        # Structured values (lists, dicts) are given as JSON.
        try:
            return adapter.validate_python(json.loads(raw))
        except (ValueError, ValidationError) as e:
            raise ConfigError(
                f"Environment variable {env_name}={raw!r} is not a valid value "
                f"for parameter '{param.name}'"
            ) from e

    def describe(self) -> List[Dict[str, Any]]:
        """Parameter names, environment variables and defaults."""
        return [
            {
                "name": p.name,
                "env": p.env_name(self.env_prefix),
                "default": p.default,
                "description": p.description,
            }
            for p in self.params.values()
        ]
