import logging

from aws_cdk import (RemovalPolicy, aws_codepipeline, aws_events,
                     aws_events_targets, aws_iam, aws_logs)
from constructs import Construct

from . import constants
from .config import EventSettings

logger = logging.getLogger(__name__)


class EventsConstruct(Construct):
    """Forwards pipeline execution state changes to an event bus and/or a log group."""

    def __init__(self, scope: Construct, id: str, prefix: str, settings: EventSettings,
                 pipeline: aws_codepipeline.IPipeline) -> None:
        super().__init__(scope, id)

        self.rule = aws_events.Rule(
            self, "EventsRule",
            rule_name=f"{prefix}-events",
            event_pattern=aws_events.EventPattern(
                source=[constants.PIPELINE_EVENT_SOURCE],
                detail_type=[constants.PIPELINE_EVENT_DETAIL_TYPE],
                detail={
                    "pipeline": [pipeline.pipeline_name],
                    "state": constants.PIPELINE_EVENT_STATES,
                }
            )
        )

        if settings.debug:
            logger.info("Debug enabled, pipeline events are written to CloudWatch Logs")
            log_group = aws_logs.LogGroup(
                self, "EventsLogGroup",
                log_group_name=f"/aws/events/{prefix}-pipeline",
                removal_policy=RemovalPolicy.DESTROY,
                retention=aws_logs.RetentionDays.ONE_YEAR
            )
            self.rule.add_target(aws_events_targets.CloudWatchLogGroup(log_group))

        if settings.event_target:
            logger.info("Forwarding pipeline events to %s", settings.event_target)
            # role for cross account event bus access
            event_role = aws_iam.Role(
                self, "CrossAccountEventRole",
                assumed_by=aws_iam.ServicePrincipal("events.amazonaws.com"),
                role_name=f"{prefix}-CrossAccountEventRole",
                description="Role for EventBridge to write pipeline events to external Event Bus",
                inline_policies={
                    "AllowPutEvents": aws_iam.PolicyDocument(statements=[
                        aws_iam.PolicyStatement(
                            effect=aws_iam.Effect.ALLOW,
                            actions=["events:PutEvents"],
                            resources=[settings.event_target]
                        )
                    ])
                }
            )
            event_bus = aws_events.EventBus.from_event_bus_arn(self, "CrossAccountEventTarget",
                                                               settings.event_target)
            self.rule.add_target(aws_events_targets.EventBus(event_bus, role=event_role))
