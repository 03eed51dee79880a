"""EC2 access for hangar.

Example:
    from hangar.aws import AWSModule, EC2ClientFactory, EC2Facade
    from injector import Injector

    factory = Injector([AWSModule(cloud_config)]).get(EC2ClientFactory)
    async with EC2Facade(factory) as ec2:
        regions = await ec2.describe_regions()
"""

from hangar.aws.clients import AWSModule, EC2ClientFactory
from hangar.aws.facade import EC2Facade, RetryPolicy

__all__ = ["AWSModule", "EC2ClientFactory", "EC2Facade", "RetryPolicy"]
