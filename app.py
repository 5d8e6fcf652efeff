#!/usr/bin/env python3
import logging
import os

import aws_cdk as cdk
import dotenv

from webservice_infrastructure.config import resolve_descriptor
from webservice_infrastructure.webservice_stack import WebServiceStack

dotenv.load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

app = cdk.App()

# configuration errors abort here, before any resource is declared
descriptor = resolve_descriptor(app.node.try_get_context("metadata"))

# stack for the web service, its pipeline and pipeline events
WebServiceStack(app, descriptor.stack_name, descriptor)

app.synth()
