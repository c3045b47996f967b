from sso_deployer.deploy.queue import DeploymentQueue, QueueStatus, UnsupportedResourceTypeError

__all__ = ["DeploymentQueue", "QueueStatus", "UnsupportedResourceTypeError"]
