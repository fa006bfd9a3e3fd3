"""Pydantic models for the session configuration document.

A session document has three sections: how to reach the cluster
(``connection``), what Pod to create around the workload (``pod``) and how
long to wait for things (``timeouts``). Field names on the wire are the
camelCase names Kubernetes users already know; attributes are snake_case.
Either spelling is accepted on input.

Example YAML::

    connection:
      host: cluster.local:6443
      bearerToken: eyJhbGciOi...
      qps: 5
      burst: 10
    pod:
      metadata:
        namespace: workloads
        generateName: echo-
      spec:
        pluginContainer:
          name: main
        volumes:
          - name: scratch
            emptyDir: {}
    timeouts:
      http: 15s
      startup: 5m

Validation is complete at this boundary: the session machinery consumes a
``Config`` and never re-checks field syntax. Mutually exclusive options
(authentication strategies, CA bundle vs. ``insecure``, ``name`` vs.
``generateName``, volume sources) are rejected here.

Manifesto:
    A misconfigured session should fail before anything is created on
    the cluster, with an error that points at the offending field.

Tags:
    podlink, configuration, pydantic, validation, kubernetes

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

DEFAULT_PLUGIN_CONTAINER_NAME = "podlink-plugin-container"

_PEM_CERTIFICATE_RE = re.compile(r"^\s*-----BEGIN CERTIFICATE-----(.|\n)+-----END CERTIFICATE-----\s*$")
_PEM_PRIVATE_KEY_RE = re.compile(
    r"^\s*-----BEGIN(\s+[A-Z]+\s+|\s+)PRIVATE KEY-----(.|\n)+-----END(\s+[A-Z]+\s+|\s+)PRIVATE KEY-----\s*$"
)
_LABEL_NAME_RE = re.compile(
    r"^(|([a-zA-Z](|[a-zA-Z\-.]{0,251}[a-zA-Z0-9]))/)([a-zA-Z](|[a-zA-Z\-]{0,61}[a-zA-Z0-9]))$"
)
_LABEL_VALUE_RE = re.compile(r"^$|^([a-zA-Z0-9]+[-._]*)+$")

DNS_SUBDOMAIN_PATTERN = r"^[a-z0-9]($|[a-z0-9\-_]*[a-z0-9])$"
GENERATE_NAME_PATTERN = r"^[a-z0-9][a-z0-9\-.]*$"
IMAGE_PATTERN = r"^[a-zA-Z0-9_\-:./@]+$"

DnsSubdomainName = Annotated[str, Field(max_length=253, pattern=DNS_SUBDOMAIN_PATTERN)]


# ── Durations ────────────────────────────────────────────────────────

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: Any) -> Any:
    """Convert ``"15s"``, ``"500ms"``, ``"1h30m"`` or a number into seconds.

    Numbers (and numeric strings) are taken as seconds. Anything else is
    returned unchanged so the float validator reports it.
    """
    if isinstance(value, bool) or not isinstance(value, str):
        return value
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass
    position = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != position:
            return value
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        return value
    return total


Duration = Annotated[float, BeforeValidator(parse_duration)]


class _Model(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )


# ── Connection ───────────────────────────────────────────────────────


class ConnectionConfig(_Model):
    """How to reach and authenticate against the Kubernetes API server.

    Authentication strategies (bearer token, client certificate + key,
    basic username + password) are mutually exclusive. With none set the
    connection is anonymous.
    """

    host: str = Field(default="kubernetes.default.svc", min_length=1, description="Host name and port")
    path: str = Field(default="/api", pattern=r"^/", description="Path to the API server")
    username: str | None = Field(default=None, description="Username for basic authentication")
    password: str | None = Field(default=None, description="Password for basic authentication")
    server_name: str | None = Field(default=None, description="Expected TLS server name")
    cacert: str | None = Field(default=None, description="CA certificate in PEM format")
    cert: str | None = Field(default=None, description="Client certificate in PEM format")
    key: str | None = Field(default=None, description="Client private key in PEM format")
    bearer_token: str | None = Field(default=None, min_length=1, description="Bearer token")
    qps: float = Field(default=5.0, gt=0, description="Queries per second allowed against the API")
    burst: int = Field(default=10, ge=1, description="Burst value for query throttling")
    insecure: bool = Field(default=False, description="Skip TLS certificate verification")

    @field_validator("cacert", "cert")
    @classmethod
    def validate_certificate(cls, v: str | None) -> str | None:
        if v is not None and not _PEM_CERTIFICATE_RE.match(v):
            raise ValueError("must be a PEM encoded certificate")
        return v

    @field_validator("key")
    @classmethod
    def validate_private_key(cls, v: str | None) -> str | None:
        if v is not None and not _PEM_PRIVATE_KEY_RE.match(v):
            raise ValueError("must be a PEM encoded private key")
        return v

    @model_validator(mode="after")
    def validate_auth(self) -> ConnectionConfig:
        """Pairs must be complete and at most one strategy may be configured."""
        if (self.username is None) != (self.password is None):
            raise ValueError("username and password must be set together")
        if (self.cert is None) != (self.key is None):
            raise ValueError("cert and key must be set together")
        if self.cacert is not None and self.insecure:
            raise ValueError("cacert and insecure are mutually exclusive")
        strategies = self.configured_auth_strategies()
        if len(strategies) > 1:
            raise ValueError(
                f"authentication strategies are mutually exclusive, got: {', '.join(strategies)}"
            )
        return self

    def configured_auth_strategies(self) -> list[str]:
        strategies = []
        if self.bearer_token is not None:
            strategies.append("bearerToken")
        if self.cert is not None:
            strategies.append("cert/key")
        if self.username is not None:
            strategies.append("username/password")
        return strategies

    @property
    def auth_strategy(self) -> Literal["bearer", "client-cert", "basic", "anonymous"]:
        if self.bearer_token is not None:
            return "bearer"
        if self.cert is not None:
            return "client-cert"
        if self.username is not None:
            return "basic"
        return "anonymous"


# ── Pod template ─────────────────────────────────────────────────────


class PodMetadata(_Model):
    """Pod metadata. ``name`` and ``generateName`` are mutually exclusive."""

    name: DnsSubdomainName | None = None
    generate_name: str | None = Field(default=None, max_length=253, pattern=GENERATE_NAME_PATTERN)
    namespace: DnsSubdomainName = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v: dict[str, str]) -> dict[str, str]:
        for label, value in v.items():
            if not _LABEL_NAME_RE.match(label):
                raise ValueError(f"invalid label name: {label!r}")
            if len(value) > 63 or not _LABEL_VALUE_RE.match(value):
                raise ValueError(f"invalid value for label {label!r}: {value!r}")
        return v

    @model_validator(mode="after")
    def validate_name(self) -> PodMetadata:
        if self.name is not None and self.generate_name is not None:
            raise ValueError("name and generateName are mutually exclusive")
        return self


class EnvVar(_Model):
    name: str = Field(..., min_length=1, pattern=r"^[-._a-zA-Z][-._a-zA-Z0-9]*$")
    value: str | None = None
    value_from: dict[str, Any] | None = None


class _ContainerOptions(_Model):
    """Container fields shared by template containers and the plugin container."""

    env_from: list[dict[str, Any]] | None = None
    env: list[EnvVar] | None = None
    volume_mounts: list[dict[str, Any]] | None = None
    volume_devices: list[dict[str, Any]] | None = None
    image_pull_policy: Literal["Always", "IfNotPresent", "Never"] | None = None
    security_context: dict[str, Any] | None = None


class Container(_ContainerOptions):
    """An init container or sidecar, passed to the Pod verbatim."""

    name: DnsSubdomainName
    image: str = Field(..., min_length=1, pattern=IMAGE_PATTERN)
    command: list[str] | None = None
    args: list[str] | None = None
    working_dir: str | None = None


class PluginContainer(_ContainerOptions):
    """Options for the container that runs the workload and is attached to.

    Image, command, args and working directory come from the workload.
    """

    name: DnsSubdomainName = DEFAULT_PLUGIN_CONTAINER_NAME


VOLUME_SOURCE_FIELDS: tuple[str, ...] = (
    "host_path",
    "empty_dir",
    "gce_persistent_disk",
    "aws_elastic_block_store",
    "secret",
    "nfs",
    "iscsi",
    "glusterfs",
    "persistent_volume_claim",
    "rbd",
    "flex_volume",
    "cinder",
    "cephfs",
    "flocker",
    "downward_api",
    "fc",
    "azure_file",
    "config_map",
    "vsphere_volume",
    "quobyte",
    "azure_disk",
    "photon_persistent_disk",
    "projected",
    "portworx_volume",
    "scale_io",
    "storageos",
    "csi",
    "ephemeral",
)


class Volume(_Model):
    """A named volume with exactly one populated source."""

    name: DnsSubdomainName
    host_path: dict[str, Any] | None = None
    empty_dir: dict[str, Any] | None = None
    gce_persistent_disk: dict[str, Any] | None = None
    aws_elastic_block_store: dict[str, Any] | None = None
    secret: dict[str, Any] | None = None
    nfs: dict[str, Any] | None = None
    iscsi: dict[str, Any] | None = None
    glusterfs: dict[str, Any] | None = None
    persistent_volume_claim: dict[str, Any] | None = None
    rbd: dict[str, Any] | None = None
    flex_volume: dict[str, Any] | None = None
    cinder: dict[str, Any] | None = None
    cephfs: dict[str, Any] | None = None
    flocker: dict[str, Any] | None = None
    downward_api: dict[str, Any] | None = Field(default=None, alias="downwardAPI")
    fc: dict[str, Any] | None = None
    azure_file: dict[str, Any] | None = None
    config_map: dict[str, Any] | None = None
    vsphere_volume: dict[str, Any] | None = None
    quobyte: dict[str, Any] | None = None
    azure_disk: dict[str, Any] | None = None
    photon_persistent_disk: dict[str, Any] | None = None
    projected: dict[str, Any] | None = None
    portworx_volume: dict[str, Any] | None = None
    scale_io: dict[str, Any] | None = Field(default=None, alias="scaleIO")
    storageos: dict[str, Any] | None = None
    csi: dict[str, Any] | None = None
    ephemeral: dict[str, Any] | None = None

    @model_validator(mode="after")
    def validate_single_source(self) -> Volume:
        populated = [f for f in VOLUME_SOURCE_FIELDS if getattr(self, f) is not None]
        if len(populated) != 1:
            wire_names = [type(self).model_fields[f].alias for f in populated]
            raise ValueError(
                f"volume {self.name!r} must have exactly one source, got {len(populated)}"
                + (f": {', '.join(wire_names)}" if wire_names else "")
            )
        return self

    @property
    def source_type(self) -> str:
        """Wire name of the populated source (e.g. ``emptyDir``)."""
        for f in VOLUME_SOURCE_FIELDS:
            if getattr(self, f) is not None:
                return type(self).model_fields[f].alias
        raise AssertionError("validated volume without a source")


class Affinity(_Model):
    pod_affinity: dict[str, Any] | None = None
    pod_anti_affinity: dict[str, Any] | None = None


class LocalObjectReference(_Model):
    name: str = Field(..., min_length=1)


class PodSpecConfig(_Model):
    """Pod-level settings around the plugin container."""

    volumes: list[Volume] = Field(default_factory=list)
    init_containers: list[Container] = Field(default_factory=list)
    containers: list[Container] = Field(default_factory=list, description="Sidecar containers")
    node_selector: dict[str, str] = Field(default_factory=dict)
    affinity: Affinity | None = None
    security_context: dict[str, Any] | None = None
    plugin_container: PluginContainer = Field(default_factory=PluginContainer)
    image_pull_secrets: list[LocalObjectReference] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_names(self) -> PodSpecConfig:
        """Container names are unique across the Pod; volume names too."""
        names = [c.name for c in self.init_containers]
        names += [c.name for c in self.containers]
        names.append(self.plugin_container.name)
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate container names: {', '.join(duplicates)}")

        volume_names = [v.name for v in self.volumes]
        duplicates = sorted({n for n in volume_names if volume_names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate volume names: {', '.join(duplicates)}")
        return self


class PodConfig(_Model):
    metadata: PodMetadata = Field(default_factory=PodMetadata)
    spec: PodSpecConfig = Field(default_factory=PodSpecConfig)


# ── Timeouts ─────────────────────────────────────────────────────────


class Timeouts(_Model):
    """Time limits. Values are seconds or duration strings (``"15s"``)."""

    http: Duration = Field(default=15.0, ge=0.1, description="Per control-plane call timeout")
    startup: Duration = Field(default=300.0, gt=0, description="Deadline for reaching Running")
    delete_grace: Duration = Field(default=5.0, gt=0, description="Longest delete() waits")


# ── Root ─────────────────────────────────────────────────────────────


class Config(_Model):
    """Complete, validated session configuration."""

    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    pod: PodConfig = Field(
        default_factory=PodConfig,
        validation_alias=AliasChoices("pod", "podTemplate"),
    )
    timeouts: Timeouts = Field(default_factory=Timeouts)

    def redacted(self) -> dict[str, Any]:
        """Wire-format dump with secrets masked, for display."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        connection = data.get("connection", {})
        for secret in ("password", "bearerToken", "key"):
            if secret in connection:
                connection[secret] = "***"
        return data
