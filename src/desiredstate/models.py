"""
Pydantic models for the desired-state document and reconciliation results.

The desired-state document is fetched fresh on every pass and never
written back anywhere, so the document models are frozen once parsed.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ParseError

DESIRED_STATE_MEDIA_TYPE = "application/vnd.margo.desired-state.v1+yaml"

_DIGEST_RE = re.compile(
    r"(?:^|/)(?P<algorithm>sha256|sha384|sha512):(?P<hex>[^/?#]*)(?:[?#]|$)"
)
_HEX_RE = re.compile(r"[a-fA-F0-9]+")
_DIGEST_LENGTH = {"sha256": 64, "sha384": 96, "sha512": 128}


def parse_digest(location: str) -> tuple[str, str]:
    """Extract the embedded content digest from a package location.

    The digest must be the last path segment and carry the full hex
    length of its algorithm. The hex part is returned lowercased.

    Args:
        location: Location string such as
            ``http://ghcr.io/v2/org/app/blobs/sha256:ab12...``.

    Returns:
        Tuple of (algorithm, hex digest).

    Raises:
        ParseError: If the location carries no complete digest.
    """
    match = _DIGEST_RE.search(location.strip())
    if not match:
        raise ParseError(f"No content digest in location: {location}")
    algorithm, hex_digest = match.group("algorithm"), match.group("hex")
    if not _HEX_RE.fullmatch(hex_digest) or len(hex_digest) != _DIGEST_LENGTH[algorithm]:
        raise ParseError(f"Malformed {algorithm} digest in location: {location}")
    return algorithm, hex_digest.lower()


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class Metadata(_Frozen):
    """Document metadata block."""

    name: str = ""
    namespace: str = ""
    annotations: dict[str, Any] = Field(default_factory=dict)


class ComponentProperties(_Frozen):
    """Where a component's signing key and package live."""

    key_location: str = Field(alias="keyLocation")
    package_location: str = Field(alias="packageLocation")


class ComponentSpec(_Frozen):
    """One named application unit of the desired state."""

    name: str
    properties: ComponentProperties

    @field_validator("name")
    @classmethod
    def _safe_name(cls, value: str) -> str:
        # The name becomes a directory under the deploy dir.
        if not value or "/" in value or "\\" in value or value.startswith("."):
            raise ValueError(f"component name is not a safe directory name: {value!r}")
        return value

    @property
    def key_location(self) -> str:
        return self.properties.key_location

    @property
    def package_location(self) -> str:
        return self.properties.package_location

    @property
    def expected_digest(self) -> str:
        """Hex digest the local deployment must carry to be up to date."""
        return parse_digest(self.package_location)[1]


class DeploymentProfile(_Frozen):
    """How the components are deployed (``compose`` for this agent)."""

    type: str = ""
    components: tuple[ComponentSpec, ...] = ()


class ParameterTarget(_Frozen):
    pointer: str = ""
    components: tuple[str, ...] = ()


class Parameter(_Frozen):
    value: Any = None
    targets: tuple[ParameterTarget, ...] = ()


class DeploymentSpec(_Frozen):
    deployment_profile: DeploymentProfile = Field(
        default_factory=DeploymentProfile, alias="deploymentProfile",
    )
    # Carried for completeness; the reconciler does not apply parameters.
    parameters: dict[str, Parameter] = Field(default_factory=dict)


class ApplicationDeployment(_Frozen):
    """The desired-state manifest: an ordered set of components."""

    api_version: str = Field(default="", alias="apiVersion")
    kind: str = ""
    metadata: Metadata = Field(default_factory=Metadata)
    spec: DeploymentSpec = Field(default_factory=DeploymentSpec)

    @property
    def components(self) -> tuple[ComponentSpec, ...]:
        return self.spec.deployment_profile.components

    @field_validator("spec")
    @classmethod
    def _unique_names(cls, value: DeploymentSpec) -> DeploymentSpec:
        seen: set[str] = set()
        for component in value.deployment_profile.components:
            if component.name in seen:
                raise ValueError(f"duplicate component name: {component.name}")
            seen.add(component.name)
        return value

    @classmethod
    def from_yaml(cls, text: str | bytes) -> ApplicationDeployment:
        """Parse a desired-state YAML document.

        Raises:
            ParseError: On invalid YAML or a document that does not
                match the schema.
        """
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ParseError(f"Desired state is not valid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise ParseError("Desired state document must be a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ParseError(f"Desired state does not match schema: {exc}") from exc


# ---------------------------------------------------------------------------
# Reconciliation results
# ---------------------------------------------------------------------------


class ComponentAction(str, Enum):
    """What a pass did with one component."""

    UP_TO_DATE = "up_to_date"
    APPLIED = "applied"
    FAILED = "failed"
    PURGED = "purged"


class ComponentOutcome(BaseModel):
    """Result of processing a single component in a pass."""

    name: str
    action: ComponentAction
    digest: Optional[str] = None
    operation: Optional[str] = None
    error: Optional[str] = None


class ReconcileReport(BaseModel):
    """Everything one reconciliation pass did."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    manifest_name: str = ""
    outcomes: list[ComponentOutcome] = Field(default_factory=list)

    def record(self, outcome: ComponentOutcome) -> None:
        self.outcomes.append(outcome)

    def by_action(self, action: ComponentAction) -> list[str]:
        return [o.name for o in self.outcomes if o.action == action]

    @property
    def failed(self) -> list[ComponentOutcome]:
        return [o for o in self.outcomes if o.action == ComponentAction.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()
