"""Deployment descriptor resolution.

The CDK context ``metadata`` object is validated and normalized here, once,
before any construct is declared. ``DeploymentMetadata`` mirrors the camelCase
context shape; ``DeploymentDescriptor`` is the resolved form handed to the
constructs. Optional subsystems (custom domain, CI pipeline, pipeline events)
are resolved into explicit settings objects, or ``None`` when they are not
configured, so the constructs never have to inspect individual optional fields.
"""
import json
import logging
import os
import re
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Tuple

import pydantic
from aws_cdk import aws_ecs as ecs
from pydantic import (AfterValidator, BaseModel, BeforeValidator, ConfigDict,
                      Field, StrictBool, StringConstraints, conint,
                      field_validator, model_validator)

from . import constants

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9-]")
_REPEATED_HYPHENS = re.compile(r"-{2,}")
_UNSAFE_PATH_CHARS = re.compile(r"[^a-zA-Z0-9._\-@#$%^&*+=~ /]|/+")

ARM64 = "ARM64"
X86_64 = "X86_64"

_ARCHITECTURES = {
    "arm": ARM64,
    "arm64": ARM64,
    "x86": X86_64,
    "x86_64": X86_64,
    "x64": X86_64,
}


class ValidationError(ValueError):
    """Raised when the deployment descriptor is missing or inconsistent."""


def _bound(name: str, limit: int) -> str:
    return name[:limit].strip("-")


def _normalize_name(name: str, limit: int) -> str:
    name = _UNSAFE_NAME_CHARS.sub("-", name.lower())
    name = _bound(_REPEATED_HYPHENS.sub("-", name), limit)
    if not name:
        raise ValidationError("Application, service and environment leave no usable resource name.")
    return name


def resource_prefix(application: str, service: str, environment: str,
                    limit: int = constants.RESOURCE_PREFIX_LIMIT) -> str:
    """Namespace shared by every resource of one application environment.

    Deterministic for a given identity tuple: lower-cased, restricted to
    ``[a-z0-9-]``, never starting or ending with ``-`` and at most ``limit``
    characters long.
    """
    return _normalize_name(f"{application}-{service}-{environment}", limit)


def pipeline_prefix(application: str, service: str, environment: str) -> str:
    """Shorter namespace for the ECR repository and the CodeBuild projects."""
    part = constants.PIPELINE_PART_LIMIT
    return _normalize_name(
        f"{application[:part]}-{service[:part]}-{environment[:part]}",
        constants.PIPELINE_PREFIX_LIMIT,
    )


def sanitize_path(path: Optional[str]) -> str:
    """Turn a user supplied directory into a clean relative unix path."""
    if not path:
        return ""
    cleaned = _UNSAFE_PATH_CHARS.sub(lambda m: "/" if "/" in m.group(0) else "", path)
    segments = [s for s in cleaned.split("/") if s not in ("", ".", "..")]
    return "/".join(segments)


def map_architecture(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    architecture = _ARCHITECTURES.get(str(value).lower())
    if architecture is None:
        logger.warning("Unrecognized architecture %r in context, using stack defaults", value)
    return architecture


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _merge_variables(value):
    # accepts {"A": "1"} as well as [{"A": "1"}, {"B": "2"}]
    if not value:
        return {}
    if isinstance(value, Mapping):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError("must be an object or a list of objects")
    merged = {}
    for entry in value:
        if not isinstance(entry, Mapping):
            raise ValueError("entries must be objects")
        merged.update({str(k): str(v) for k, v in entry.items()})
    return merged


def _build_args(value):
    if not value:
        return {}
    if isinstance(value, Mapping):
        return value
    args = {}
    for arg in value:
        key, sep, val = str(arg).partition("=")
        if not key or not sep:
            raise ValueError(f"Docker build argument {arg!r} must have the form KEY=VALUE")
        args[key] = val
    return args


def _unique_keys(secrets):
    keys = [secret.key for secret in secrets]
    duplicates = sorted({key for key in keys if keys.count(key) > 1})
    if duplicates:
        raise ValueError(f"duplicate secret keys: {', '.join(duplicates)}")
    return secrets


NonBlankStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
OptionalStr = Annotated[Optional[NonBlankStr], BeforeValidator(_blank_to_none)]
PositiveInt = conint(strict=True, gt=0)
Variables = Annotated[Dict[str, str], BeforeValidator(_merge_variables)]
BuildArgs = Annotated[Dict[str, str], BeforeValidator(_build_args)]
Architecture = Annotated[Literal["ARM64", "X86_64"], BeforeValidator(lambda v: map_architecture(v) or ARM64)]
BuildSystem = Literal[constants.BUILD_SYSTEM_DOCKER, constants.BUILD_SYSTEM_NIXPACKS]


class _Settings(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class SecretReference(_Settings):
    key: NonBlankStr
    resource: NonBlankStr

    @property
    def is_secrets_manager(self) -> bool:
        return self.resource.startswith("arn:") and ":secretsmanager:" in self.resource


Secrets = Annotated[
    Tuple[SecretReference, ...],
    BeforeValidator(lambda v: v or ()),
    AfterValidator(_unique_keys),
]


class ServiceSettings(_Settings):
    architecture: Architecture = ARM64
    desired_count: PositiveInt = Field(default=constants.DEFAULT_DESIRED_COUNT, alias="desiredCount")
    cpu: PositiveInt = constants.DEFAULT_CPU
    memory_size: PositiveInt = Field(default=constants.DEFAULT_MEMORY_SIZE, alias="memorySize")
    port: PositiveInt = constants.DEFAULT_PORT
    health_check_path: NonBlankStr = Field(default=constants.DEFAULT_HEALTH_CHECK_PATH, alias="healthCheckPath")
    variables: Variables = Field(default_factory=dict)
    secrets: Secrets = ()
    docker_file: NonBlankStr = Field(default=constants.DEFAULT_DOCKERFILE, alias="dockerFile")
    docker_build_args: BuildArgs = Field(default_factory=dict, alias="dockerBuildArgs")

    @property
    def is_arm(self) -> bool:
        return self.architecture == ARM64

    @property
    def cpu_architecture(self) -> ecs.CpuArchitecture:
        return ecs.CpuArchitecture.ARM64 if self.is_arm else ecs.CpuArchitecture.X86_64


class BuildSettings(_Settings):
    build_system: BuildSystem = Field(default=constants.BUILD_SYSTEM_DOCKER, alias="buildSystem")
    install_cmd: OptionalStr = Field(default=None, alias="installcmd")
    build_cmd: OptionalStr = Field(default=None, alias="buildcmd")
    start_cmd: OptionalStr = Field(default=None, alias="startcmd")
    environment: Variables = Field(default_factory=dict)
    secrets: Secrets = ()

    @property
    def uses_nixpacks(self) -> bool:
        return self.build_system == constants.BUILD_SYSTEM_NIXPACKS


class SourceSettings(_Settings):
    owner: OptionalStr = None
    repo: OptionalStr = None
    branch_or_ref: NonBlankStr = Field(default=constants.DEFAULT_BRANCH, alias="branchOrRef")


class AwsEnvironment(_Settings):
    account: OptionalStr = None
    region: OptionalStr = None


class DomainSettings(_Settings):
    domain: str
    hosted_zone_id: str
    regional_certificate_arn: str

    @property
    def zone_name(self) -> str:
        # app.example.com is served from the example.com zone
        return ".".join(self.domain.split(".")[1:])


class EventSettings(_Settings):
    event_target: Optional[str] = None
    debug: bool = False


class PipelineSettings(_Settings):
    source: SourceSettings
    access_token_secret_arn: str
    build: BuildSettings = Field(default_factory=BuildSettings)
    events: Optional[EventSettings] = None


class DeploymentDescriptor(_Settings):
    application: str
    service: str
    environment: str
    account: str
    region: str
    root_dir: str = constants.DEFAULT_ROOT_DIR
    debug: bool = False
    service_settings: ServiceSettings = Field(default_factory=ServiceSettings)
    domain: Optional[DomainSettings] = None
    pipeline: Optional[PipelineSettings] = None

    @property
    def stack_name(self) -> str:
        return f"{self.application}-{self.service}-{self.environment}-stack"

    @property
    def resource_prefix(self) -> str:
        return resource_prefix(self.application, self.service, self.environment)

    @property
    def pipeline_prefix(self) -> str:
        return pipeline_prefix(self.application, self.service, self.environment)

    @property
    def source_path(self) -> str:
        """rootDir as a relative path inside the source checkout ('' for the root)."""
        return sanitize_path(self.root_dir)

    @property
    def load_balancer_name(self) -> str:
        return _bound(self.resource_prefix, constants.LOAD_BALANCER_NAME_LIMIT)

    @property
    def target_group_name(self) -> str:
        suffix = "-tg"
        return _bound(self.resource_prefix, constants.TARGET_GROUP_NAME_LIMIT - len(suffix)) + suffix


class DeploymentMetadata(BaseModel):
    """The ``metadata`` context object, keyed by its camelCase names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    application: NonBlankStr
    service: NonBlankStr
    environment: NonBlankStr
    env: AwsEnvironment = Field(default_factory=AwsEnvironment)
    root_dir: OptionalStr = Field(default=None, alias="rootDir")
    debug: StrictBool = False
    service_props: ServiceSettings = Field(default_factory=ServiceSettings, alias="serviceProps")
    domain: OptionalStr = None
    hosted_zone_id: OptionalStr = Field(default=None, alias="hostedZoneId")
    regional_certificate_arn: OptionalStr = Field(default=None, alias="regionalCertificateArn")
    source_props: Optional[SourceSettings] = Field(default=None, alias="sourceProps")
    access_token_secret_arn: OptionalStr = Field(default=None, alias="accessTokenSecretArn")
    build_props: BuildSettings = Field(default_factory=BuildSettings, alias="buildProps")
    event_target: OptionalStr = Field(default=None, alias="eventTarget")

    @field_validator("env", "service_props", "build_props", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return {} if value is None else value

    @model_validator(mode="after")
    def _resolve_environment(self):
        account = self.env.account or os.environ.get("CDK_DEFAULT_ACCOUNT")
        region = self.env.region or os.environ.get("CDK_DEFAULT_REGION")
        if not account or not region:
            raise ValueError("Must provide AWS account and region.")
        if not (self.env.account and self.env.region):
            logger.info("Using account %s and region %s from the environment", account, region)
        self.env = AwsEnvironment(account=account, region=region)
        return self

    @model_validator(mode="after")
    def _check_names(self):
        resource_prefix(self.application, self.service, self.environment)
        pipeline_prefix(self.application, self.service, self.environment)
        return self

    @model_validator(mode="after")
    def _check_domain(self):
        group = (self.domain, self.hosted_zone_id, self.regional_certificate_arn)
        if any(group) and not all(group):
            raise ValueError(
                "Custom domain requires 'domain', 'hostedZoneId' and 'regionalCertificateArn' together."
            )
        if self.domain and "." not in self.domain.strip("."):
            raise ValueError(f"Domain {self.domain!r} must be a subdomain of the hosted zone.")
        return self

    @model_validator(mode="after")
    def _check_pipeline(self):
        if self.source_props is None and self.access_token_secret_arn is None:
            if self.event_target:
                raise ValueError("'eventTarget' requires a pipeline ('sourceProps' and 'accessTokenSecretArn').")
            return self
        source = self.source_props or SourceSettings()
        missing = [name for name, value in (
            ("sourceProps.owner", source.owner),
            ("sourceProps.repo", source.repo),
            ("accessTokenSecretArn", self.access_token_secret_arn),
        ) if not value]
        if missing:
            raise ValueError(f"Pipeline configuration incomplete, missing: {', '.join(missing)}.")
        return self

    def _domain_settings(self) -> Optional[DomainSettings]:
        if not self.domain:
            return None
        return DomainSettings(
            domain=self.domain,
            hosted_zone_id=self.hosted_zone_id,
            regional_certificate_arn=self.regional_certificate_arn,
        )

    def _pipeline_settings(self) -> Optional[PipelineSettings]:
        if self.source_props is None:
            return None
        events = None
        if self.event_target or self.debug:
            events = EventSettings(event_target=self.event_target, debug=self.debug)
        return PipelineSettings(
            source=self.source_props,
            access_token_secret_arn=self.access_token_secret_arn,
            build=self.build_props,
            events=events,
        )

    def to_descriptor(self) -> DeploymentDescriptor:
        return DeploymentDescriptor(
            application=self.application,
            service=self.service,
            environment=self.environment,
            account=self.env.account,
            region=self.env.region,
            root_dir=self.root_dir or constants.DEFAULT_ROOT_DIR,
            debug=self.debug,
            service_settings=self.service_props,
            domain=self._domain_settings(),
            pipeline=self._pipeline_settings(),
        )


def _describe_errors(error: pydantic.ValidationError) -> str:
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        messages.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return "; ".join(messages)


def resolve_descriptor(metadata: Any) -> DeploymentDescriptor:
    """Validate the raw ``metadata`` context value and apply defaults."""
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Context metadata is not valid JSON: {e}") from e
    if not metadata:
        raise ValidationError("Context metadata missing!")
    if not isinstance(metadata, Mapping):
        raise ValidationError("Context metadata must be an object.")

    try:
        descriptor = DeploymentMetadata.model_validate(metadata).to_descriptor()
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid context metadata: {_describe_errors(e)}") from e
    logger.debug("Resolved deployment descriptor %s", descriptor)
    return descriptor
