import logging

from aws_cdk import (CfnOutput, Duration, RemovalPolicy, SecretValue,
                     aws_codebuild,
                     aws_codepipeline,
                     aws_codepipeline_actions,
                     aws_ecr,
                     aws_ecs,
                     aws_iam)
from constructs import Construct

from . import constants
from .buildspec import deploy_spec, image_build_spec
from .config import DeploymentDescriptor

logger = logging.getLogger(__name__)


class PipelineConstruct(Construct):

    def __init__(self, scope: Construct, id: str, descriptor: DeploymentDescriptor,
                 cluster: aws_ecs.ICluster, fargate_service: aws_ecs.FargateService,
                 task_definition: aws_ecs.TaskDefinition) -> None:
        super().__init__(scope, id)

        if descriptor.pipeline is None:
            raise ValueError("PipelineConstruct requires a descriptor with pipeline settings")

        prefix = descriptor.pipeline_prefix
        settings = descriptor.pipeline

        # ecr repo to push docker images into
        self.ecr_repository = aws_ecr.Repository(
            self, "ServiceEcrRepo",
            repository_name=f"{prefix}-repo",
            removal_policy=RemovalPolicy.DESTROY,
            empty_on_delete=True
        )

        # task execution role pulls the pipeline built images
        task_definition.obtain_execution_role().add_to_principal_policy(aws_iam.PolicyStatement(
            effect=aws_iam.Effect.ALLOW,
            actions=[
                "ecr:GetAuthorizationToken",
                "ecr:BatchCheckLayerAvailability",
                "ecr:GetDownloadUrlForLayer",
                "ecr:BatchGetImage",
                "logs:CreateLogStream",
                "logs:PutLogEvents"
            ],
            resources=["*"]
        ))

        build_environment = aws_codebuild.BuildEnvironment(
            build_image=(aws_codebuild.LinuxArmBuildImage.AMAZON_LINUX_2_STANDARD_3_0
                         if descriptor.service_settings.is_arm
                         else aws_codebuild.LinuxBuildImage.STANDARD_7_0),
            compute_type=aws_codebuild.ComputeType.SMALL,
            privileged=True
        )

        # codebuild project that builds, pushes and digest-pins the image
        self.build_project = aws_codebuild.PipelineProject(
            self, "ServiceDockerBuild",
            project_name=f"{prefix}-docker-build",
            build_spec=image_build_spec(descriptor).to_build_spec(),
            environment=build_environment,
            environment_variables=self._build_variables(descriptor),
            timeout=Duration.minutes(constants.BUILD_TIMEOUT_MINUTES)
        )

        # codebuild permissions to interact with ecr
        self.ecr_repository.grant_pull_push(self.build_project)

        # codebuild project that rolls the service onto the new image
        self.deploy_project = aws_codebuild.PipelineProject(
            self, "EcsDeployProject",
            project_name=f"{prefix}-ecs-deploy",
            build_spec=deploy_spec(descriptor).to_build_spec(),
            environment=build_environment,
            environment_variables={
                "ECS_CLUSTER": aws_codebuild.BuildEnvironmentVariable(value=cluster.cluster_name),
                "ECS_SERVICE": aws_codebuild.BuildEnvironmentVariable(value=fargate_service.service_name),
                "ECS_TASKDEF": aws_codebuild.BuildEnvironmentVariable(value=task_definition.family),
            },
            timeout=Duration.minutes(constants.DEPLOY_TIMEOUT_MINUTES)
        )

        self.deploy_project.add_to_role_policy(aws_iam.PolicyStatement(
            effect=aws_iam.Effect.ALLOW,
            actions=[
                "ecs:UpdateService",
                "ecs:DescribeServices",
                "ecs:DescribeTaskDefinition",
                "ecs:RegisterTaskDefinition",
                "ecs:DescribeTasks",
                "ecs:ListTasks"
            ],
            resources=["*"]
        ))

        # registering a revision passes the task roles along
        self.deploy_project.add_to_role_policy(aws_iam.PolicyStatement(
            effect=aws_iam.Effect.ALLOW,
            actions=["iam:PassRole"],
            resources=[
                task_definition.task_role.role_arn,
                task_definition.obtain_execution_role().role_arn
            ]
        ))

        # define the source and build artifacts
        source_output = aws_codepipeline.Artifact(artifact_name="SourceOutput")
        build_output = aws_codepipeline.Artifact(artifact_name="BuildOutput")

        self.pipeline = aws_codepipeline.Pipeline(
            self, "WebServicePipeline",
            pipeline_name=f"{prefix}-pipeline",
            pipeline_type=aws_codepipeline.PipelineType.V2,
            stages=[
                aws_codepipeline.StageProps(
                    stage_name="Source",
                    actions=[
                        aws_codepipeline_actions.GitHubSourceAction(
                            action_name="GithubSourceAction",
                            owner=settings.source.owner,
                            repo=settings.source.repo,
                            branch=settings.source.branch_or_ref,
                            oauth_token=SecretValue.secrets_manager(settings.access_token_secret_arn),
                            output=source_output,
                            trigger=aws_codepipeline_actions.GitHubTrigger.WEBHOOK
                        )
                    ]
                ),
                aws_codepipeline.StageProps(
                    stage_name="Build",
                    actions=[
                        aws_codepipeline_actions.CodeBuildAction(
                            action_name="BuildAction",
                            project=self.build_project,
                            input=source_output,
                            outputs=[build_output],
                            type=aws_codepipeline_actions.CodeBuildActionType.BUILD
                        )
                    ]
                ),
                aws_codepipeline.StageProps(
                    stage_name="Deploy",
                    actions=[
                        aws_codepipeline_actions.CodeBuildAction(
                            action_name="DeployAction",
                            project=self.deploy_project,
                            input=build_output
                        )
                    ]
                )
            ]
        )
        logger.info("Declared pipeline for %s/%s@%s",
                    settings.source.owner, settings.source.repo, settings.source.branch_or_ref)

        # cfn output
        CfnOutput(
            self, "CodePipelineName",
            description="The name of the ECS Fargate deployment pipeline",
            value=self.pipeline.pipeline_name,
            export_name=f"{prefix}-CodePipelineName"
        )

    def _build_variables(self, descriptor: DeploymentDescriptor) -> dict:
        # pass the ecr repo uri into the codebuild project so codebuild knows where to push
        variables = {
            "ECR_REPO": aws_codebuild.BuildEnvironmentVariable(value=self.ecr_repository.repository_uri)
        }
        build = descriptor.pipeline.build
        for key, value in build.environment.items():
            variables[key] = aws_codebuild.BuildEnvironmentVariable(
                value=value,
                type=aws_codebuild.BuildEnvironmentVariableType.PLAINTEXT
            )
        for secret in build.secrets:
            variables[secret.key] = aws_codebuild.BuildEnvironmentVariable(
                value=secret.resource,
                type=(aws_codebuild.BuildEnvironmentVariableType.SECRETS_MANAGER
                      if secret.is_secrets_manager
                      else aws_codebuild.BuildEnvironmentVariableType.PARAMETER_STORE)
            )
        return variables
