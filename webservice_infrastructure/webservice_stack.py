import logging

from aws_cdk import Environment, Stack
from constructs import Construct

from .config import DeploymentDescriptor
from .webservice_events import EventsConstruct
from .webservice_pipeline import PipelineConstruct
from .webservice_service import ServiceConstruct

logger = logging.getLogger(__name__)


class WebServiceStack(Stack):

    def __init__(self, scope: Construct, id: str, descriptor: DeploymentDescriptor,
                 context_dir: str = None, **kwargs) -> None:
        kwargs.setdefault("env", Environment(account=descriptor.account, region=descriptor.region))
        super().__init__(scope, id, **kwargs)

        self.descriptor = descriptor

        self.service = ServiceConstruct(self, "Service", descriptor, context_dir=context_dir)

        self.pipeline = None
        self.events = None
        if descriptor.pipeline is None:
            logger.info("No pipeline source configured for %s", descriptor.resource_prefix)
            return

        self.pipeline = PipelineConstruct(self, "Pipeline", descriptor,
            cluster=self.service.cluster,
            fargate_service=self.service.fargate_service,
            task_definition=self.service.task_definition
        )

        if descriptor.pipeline.events is not None:
            self.events = EventsConstruct(self, "Events",
                prefix=descriptor.resource_prefix,
                settings=descriptor.pipeline.events,
                pipeline=self.pipeline.pipeline
            )
