"""CodeBuild specifications for the image build and ECS deploy stages.

Commands are collected per phase in a ``BuildSpecDocument`` and rendered to
the CodeBuild object format in one place. Values coming from the descriptor
(paths, Dockerfile names, Nixpacks commands) are shell quoted before they are
embedded in a command.
"""
import shlex
from dataclasses import dataclass, field
from typing import Dict, List

from aws_cdk import aws_codebuild as codebuild

from . import constants
from .config import DeploymentDescriptor

PHASES = ("install", "pre_build", "build", "post_build")

NIXPACKS_INSTALL = "curl -sSL https://nixpacks.com/install.sh | bash"
ECR_LOGIN = (
    "aws ecr get-login-password --region $AWS_DEFAULT_REGION"
    " | docker login --username AWS --password-stdin $ECR_REPO"
)
# UTC timestamp plus the per-project build counter, unique even for builds
# started within the same second
IMAGE_TAG_EXPORT = 'export IMAGE_TAG="$(date -u +%Y%m%d%H%M%S)-${CODEBUILD_BUILD_NUMBER}"'
IMAGE_DIGEST_EXPORT = (
    'export IMAGE_DIGEST=$(docker inspect --format="{{index .RepoDigests 0}}"'
    ' $ECR_REPO:$IMAGE_TAG | cut -d"@" -f2)'
)
TASKDEF_PATCH = (
    "echo \"$CURRENT_TASK_DEF\" | jq --arg IMAGE_URI \"$IMAGE_URI\""
    " '.taskDefinition | .containerDefinitions[0].image = $IMAGE_URI"
    " | del(.taskDefinitionArn, .revision, .status, .requiresAttributes,"
    " .compatibilities, .registeredAt, .registeredBy)' > taskdef.json"
)


@dataclass
class BuildSpecDocument:
    """Commands of a CodeBuild buildspec, grouped by phase."""

    install: List[str] = field(default_factory=list)
    pre_build: List[str] = field(default_factory=list)
    build: List[str] = field(default_factory=list)
    post_build: List[str] = field(default_factory=list)
    artifact_files: List[str] = field(default_factory=list)
    shell: str = "bash"

    def commands(self) -> List[str]:
        return [command for phase in PHASES for command in getattr(self, phase)]

    def render(self) -> Dict:
        phases = {
            phase: {"commands": list(getattr(self, phase))}
            for phase in PHASES if getattr(self, phase)
        }
        spec = {
            "version": "0.2",
            "env": {"shell": self.shell},
            "phases": phases,
        }
        if self.artifact_files:
            spec["artifacts"] = {"files": list(self.artifact_files)}
        return spec

    def to_build_spec(self) -> codebuild.BuildSpec:
        return codebuild.BuildSpec.from_object(self.render())


def artifact_path(source_path: str, filename: str) -> str:
    return f"{source_path}/{filename}" if source_path else filename


def nixpacks_command(install_cmd=None, build_cmd=None, start_cmd=None) -> str:
    # writes .nixpacks/Dockerfile next to the sources
    args = ["nixpacks", "build", ".", "--out", "."]
    for flag, value in (("--install-cmd", install_cmd),
                        ("--build-cmd", build_cmd),
                        ("--start-cmd", start_cmd)):
        if value:
            args += [flag, shlex.quote(value)]
    return " ".join(args)


def image_build_spec(descriptor: DeploymentDescriptor) -> BuildSpecDocument:
    """Build, tag, push and digest-pin the service image."""
    build_settings = descriptor.pipeline.build
    source_path = descriptor.source_path
    dockerfile = descriptor.service_settings.docker_file

    pre_build = []
    if source_path:
        pre_build.append(f"cd {shlex.quote(source_path)}")
    if build_settings.uses_nixpacks:
        pre_build += [
            NIXPACKS_INSTALL,
            nixpacks_command(build_settings.install_cmd, build_settings.build_cmd, build_settings.start_cmd),
        ]
        dockerfile = constants.NIXPACKS_DOCKERFILE
    pre_build += [
        IMAGE_TAG_EXPORT,
        "aws --version",
        ECR_LOGIN,
    ]

    return BuildSpecDocument(
        pre_build=pre_build,
        build=[
            f"docker build -t $ECR_REPO:$IMAGE_TAG -f {shlex.quote(dockerfile)} .",
            "docker push $ECR_REPO:$IMAGE_TAG",
        ],
        post_build=[
            # post_build also runs after a failed build
            'if [ "$CODEBUILD_BUILD_SUCCEEDING" = "0" ]; then echo "Image build failed"; exit 1; fi',
            IMAGE_DIGEST_EXPORT,
            'if [ -z "$IMAGE_DIGEST" ]; then echo "Could not resolve image digest"; exit 1; fi',
            "export IMAGE_URI=$ECR_REPO@$IMAGE_DIGEST",
            f"echo $IMAGE_URI > {constants.IMAGE_URI_FILE}",
            f"echo $IMAGE_TAG > {constants.IMAGE_TAG_FILE}",
            f"echo $IMAGE_DIGEST > {constants.IMAGE_DIGEST_FILE}",
        ],
        artifact_files=[
            artifact_path(source_path, name)
            for name in (constants.IMAGE_URI_FILE, constants.IMAGE_TAG_FILE, constants.IMAGE_DIGEST_FILE)
        ],
    )


def _poll_deployment_command(attempts: int, interval: int) -> str:
    # Follows the deployment of the revision registered by this build. After a
    # circuit breaker rollback the PRIMARY deployment runs an older revision.
    return (
        f"for i in $(seq 1 {attempts}); do "
        "SERVICE_JSON=$(aws ecs describe-services --cluster $ECS_CLUSTER --services $ECS_SERVICE"
        " --region $AWS_DEFAULT_REGION --query \"services[0]\" --output json); "
        "RUNNING_COUNT=$(echo \"$SERVICE_JSON\" | jq -r '.runningCount'); "
        "DESIRED_COUNT=$(echo \"$SERVICE_JSON\" | jq -r '.desiredCount'); "
        "ROLLOUT_STATE=$(echo \"$SERVICE_JSON\" | jq -r --arg TD \"$NEW_TASK_DEF_ARN\""
        " '[.deployments[] | select(.taskDefinition == $TD)][0].rolloutState'); "
        "PRIMARY_TASK_DEF=$(echo \"$SERVICE_JSON\""
        " | jq -r '[.deployments[] | select(.status == \"PRIMARY\")][0].taskDefinition'); "
        "echo \"Rollout state: $ROLLOUT_STATE, Running: $RUNNING_COUNT/$DESIRED_COUNT"
        f" (attempt $i/{attempts})\"; "
        "if [ \"$ROLLOUT_STATE\" = \"FAILED\" ]; then echo \"Deployment failed\"; exit 1; fi; "
        "if [ \"$PRIMARY_TASK_DEF\" != \"$NEW_TASK_DEF_ARN\" ]; then"
        " echo \"Deployment rolled back to $PRIMARY_TASK_DEF\"; exit 1; fi; "
        "if [ \"$ROLLOUT_STATE\" = \"COMPLETED\" ] && [ \"$RUNNING_COUNT\" = \"$DESIRED_COUNT\" ]; then"
        " echo \"Deployment successful\"; break; fi; "
        f"sleep {interval}; done"
    )


def deploy_spec(descriptor: DeploymentDescriptor) -> BuildSpecDocument:
    """Repoint the running service at a new task revision using the built digest.

    The live task definition is read, only the image of the first container is
    replaced, and the result is registered as a new revision.
    """
    image_uri_file = artifact_path(descriptor.source_path, constants.IMAGE_URI_FILE)
    deployment_configuration = (
        f"maximumPercent={constants.MAX_HEALTHY_PERCENT},"
        f"minimumHealthyPercent={constants.MIN_HEALTHY_PERCENT},"
        "deploymentCircuitBreaker={enable=true,rollback=true}"
    )

    return BuildSpecDocument(
        pre_build=[
            'echo "Starting ECS deployment..."',
            f"IMAGE_URI=$(cat {shlex.quote(image_uri_file)})",
            'case "$IMAGE_URI" in *@sha256:*) ;; '
            '*) echo "Refusing to deploy an image without a digest: $IMAGE_URI"; exit 1 ;; esac',
            'echo "Deploying image: $IMAGE_URI"',
            "CURRENT_TASK_DEF=$(aws ecs describe-task-definition --task-definition $ECS_TASKDEF"
            " --region $AWS_DEFAULT_REGION)",
            TASKDEF_PATCH,
        ],
        build=[
            "NEW_TASK_DEF_ARN=$(aws ecs register-task-definition --cli-input-json file://taskdef.json"
            " --region $AWS_DEFAULT_REGION --query \"taskDefinition.taskDefinitionArn\" --output text)",
            'echo "New task definition: $NEW_TASK_DEF_ARN"',
            "aws ecs update-service --cluster $ECS_CLUSTER --service $ECS_SERVICE"
            " --task-definition $NEW_TASK_DEF_ARN"
            f" --deployment-configuration \"{deployment_configuration}\""
            " --region $AWS_DEFAULT_REGION",
            'echo "Monitoring deployment progress..."',
            _poll_deployment_command(constants.DEPLOY_POLL_ATTEMPTS, constants.DEPLOY_POLL_INTERVAL_SECONDS),
            f"timeout {constants.DEPLOY_STABLE_WAIT_SECONDS} aws ecs wait services-stable"
            " --cluster $ECS_CLUSTER --services $ECS_SERVICE --region $AWS_DEFAULT_REGION"
            ' || echo "WARNING: service not confirmed stable before timeout, check the ECS console"',
            'echo "ECS service deployment finished"',
        ],
    )
