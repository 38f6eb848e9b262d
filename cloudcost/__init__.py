"""AWS cost metrics for EC2 instances, EBS volumes and S3, with a metrics server."""

__version__ = "0.1.0"