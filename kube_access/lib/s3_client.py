"""S3 client for CRL and trust anchor publication."""

import boto3


class S3Client:
    """S3 client for publishing revocation lists."""

    def __init__(self, region: str = "eu-west-2") -> None:
        """Initialize S3 client.

        Args:
            region: AWS region for S3 client
        """
        self.client = boto3.client("s3", region_name=region)

    def upload_crl(self, bucket_name: str, crl_content: bytes, key: str = "crl.pem") -> str:
        """Upload CRL to S3 bucket.

        Args:
            bucket_name: S3 bucket name
            crl_content: PEM encoded CRL
            key: S3 object key (default: crl.pem)

        Returns:
            S3 version ID if versioning enabled, empty string otherwise

        Raises:
            ClientError: If upload fails
        """
        response = self.client.put_object(
            Bucket=bucket_name,
            Key=key,
            Body=crl_content,
            ContentType="application/pkix-crl",
        )
        return response.get("VersionId", "")

    def get_crl(self, bucket_name: str, key: str = "crl.pem") -> bytes:
        """Download CRL from S3 bucket.

        Raises:
            ClientError: If download fails
        """
        response = self.client.get_object(Bucket=bucket_name, Key=key)
        return response["Body"].read()
