#!/usr/bin/env python3
"""
Image Management CDK Application

This app defines the infrastructure for the image store and its lifecycle
event pipeline: direct invalidation on removal, and queued broadcast of
created and removed objects.
"""

import os

import aws_cdk as cdk
from lib.image_management_stack import ImageManagementStack

app = cdk.App()

# Get environment configuration
env = cdk.Environment(
    account=app.node.try_get_context("account"),
    region=app.node.try_get_context("region") or "us-east-1"
)

ImageManagementStack(
    app,
    "ImageManagementStack",
    source_ip=os.environ.get("SOURCE_IP"),
    env=env,
    description="Image store with invalidation and broadcast event pipeline"
)

app.synth()
