from tenanthub.adapters.storage.s3 import S3BucketProvisioner

__all__ = ["S3BucketProvisioner"]
