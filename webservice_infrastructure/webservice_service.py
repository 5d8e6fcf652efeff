import logging
import os

from aws_cdk import (CfnOutput, aws_certificatemanager as acm,
                     aws_ec2 as ec2, aws_ecr_assets as ecr_assets,
                     aws_ecs as ecs,
                     aws_elasticloadbalancingv2 as elb,
                     aws_logs as logs,
                     aws_route53 as route53,
                     aws_route53_targets as route53_targets,
                     aws_secretsmanager as secretsmanager)
from constructs import Construct

from . import constants
from .config import DeploymentDescriptor

logger = logging.getLogger(__name__)


class ServiceConstruct(Construct):

    def __init__(self, scope: Construct, id: str, descriptor: DeploymentDescriptor,
                 context_dir: str = None) -> None:
        super().__init__(scope, id)

        prefix = descriptor.resource_prefix
        settings = descriptor.service_settings

        vpc = ec2.Vpc(self, "Vpc",
            vpc_name=f"{prefix}-vpc",
            max_azs=2,
            nat_gateways=0,
            subnet_configuration=[
                ec2.SubnetConfiguration(name="public", subnet_type=ec2.SubnetType.PUBLIC)
            ]
        )

        self.cluster = ecs.Cluster(self, "Cluster", cluster_name=f"{prefix}-cluster", vpc=vpc)

        # log group for container logs
        log_group = logs.LogGroup(self, "LogGroup",
            log_group_name=f"{prefix}-logs",
            retention=logs.RetentionDays.ONE_WEEK
        )

        self.task_definition = ecs.TaskDefinition(self, "Task",
            compatibility=ecs.Compatibility.FARGATE,
            cpu=str(settings.cpu),
            memory_mib=str(settings.memory_size),
            runtime_platform=ecs.RuntimePlatform(
                cpu_architecture=settings.cpu_architecture,
                operating_system_family=ecs.OperatingSystemFamily.LINUX
            )
        )

        # initial image is built from the local sources, later revisions come from the pipeline
        image = ecs.ContainerImage.from_asset(
            os.path.join(context_dir or os.getcwd(), descriptor.root_dir),
            file=settings.docker_file,
            build_args=settings.docker_build_args or None,
            platform=ecr_assets.Platform.LINUX_ARM64 if settings.is_arm else ecr_assets.Platform.LINUX_AMD64
        )

        secrets = {
            secret.key: ecs.Secret.from_secrets_manager(
                secretsmanager.Secret.from_secret_complete_arn(self, f"{secret.key}Secret", secret.resource)
            )
            for secret in settings.secrets
        }

        self.container = self.task_definition.add_container("Container",
            container_name=f"{descriptor.service}-container",
            image=image,
            logging=ecs.LogDriver.aws_logs(log_group=log_group, stream_prefix="web"),
            environment=settings.variables,
            secrets=secrets or None,
            port_mappings=[ecs.PortMapping(container_port=settings.port, protocol=ecs.Protocol.TCP)]
        )

        # rolling deployment, rolled back automatically when tasks fail to stabilize
        self.fargate_service = ecs.FargateService(self, "FargateService",
            service_name=f"{prefix}-service",
            cluster=self.cluster,
            task_definition=self.task_definition,
            desired_count=settings.desired_count,
            min_healthy_percent=constants.MIN_HEALTHY_PERCENT,
            max_healthy_percent=constants.MAX_HEALTHY_PERCENT,
            circuit_breaker=ecs.DeploymentCircuitBreaker(rollback=True),
            assign_public_ip=True
        )

        load_balancer = elb.ApplicationLoadBalancer(self, "ALB",
            load_balancer_name=descriptor.load_balancer_name,
            vpc=vpc,
            internet_facing=True
        )

        # http listener is always present
        listener = load_balancer.add_listener("Listener",
            port=80,
            open=True,
            protocol=elb.ApplicationProtocol.HTTP
        )

        if descriptor.domain is not None:
            domain = descriptor.domain
            logger.info("Wiring HTTPS listener and alias record for %s", domain.domain)

            hosted_zone = route53.HostedZone.from_hosted_zone_attributes(self, "HostedZone",
                hosted_zone_id=domain.hosted_zone_id,
                zone_name=domain.zone_name
            )
            certificate = acm.Certificate.from_certificate_arn(self, "Certificate",
                domain.regional_certificate_arn)

            https_listener = load_balancer.add_listener("HttpsListener",
                port=443,
                open=True,
                protocol=elb.ApplicationProtocol.HTTPS,
                certificates=[elb.ListenerCertificate.from_certificate_manager(certificate)]
            )
            self._add_service_targets(https_listener, descriptor)

            # redirect http to https
            listener.add_action("HTTPRedirect",
                action=elb.ListenerAction.redirect(protocol="HTTPS", port="443")
            )

            route53.ARecord(self, "AliasRecord",
                zone=hosted_zone,
                record_name=domain.domain,
                target=route53.RecordTarget.from_alias(route53_targets.LoadBalancerTarget(load_balancer))
            )
        else:
            logger.info("No custom domain for %s, serving plain HTTP", prefix)
            self._add_service_targets(listener, descriptor)

        self.load_balancer = load_balancer
        self.load_balancer_dns_name = load_balancer.load_balancer_dns_name

        CfnOutput(self, "LoadBalancerDNS",
            value=self.load_balancer_dns_name,
            description="The DNS name of the load balancer"
        )

    def _add_service_targets(self, listener: elb.ApplicationListener, descriptor: DeploymentDescriptor):
        listener.add_targets("ECS",
            port=descriptor.service_settings.port,
            protocol=elb.ApplicationProtocol.HTTP,
            targets=[self.fargate_service],
            health_check=elb.HealthCheck(path=descriptor.service_settings.health_check_path),
            target_group_name=descriptor.target_group_name
        )
