"""SSM client for reading and storing the cluster CA in AWS Parameter Store."""

import boto3
from botocore.exceptions import ClientError

from kube_access.lib.cert_utils import deserialize_certificate, deserialize_private_key
from kube_access.lib.errors import CAUnavailable
from kube_access.lib.models import CAKeyMaterial


class SSMClient:
    """SSM client for cluster CA key material."""

    def __init__(self, region: str = "eu-west-2") -> None:
        """Initialize SSM client.

        Args:
            region: AWS region for SSM client
        """
        self.client = boto3.client("ssm", region_name=region)

    @staticmethod
    def _ca_paths(project_name: str, cluster: str) -> tuple[str, str]:
        prefix = f"/{project_name}/{cluster}/ca"
        return f"{prefix}/private-key", f"{prefix}/certificate"

    def get_cluster_ca(self, project_name: str, cluster: str) -> CAKeyMaterial:
        """Fetch cluster CA key and certificate from SSM.

        Args:
            project_name: Project name prefix (e.g., 'kube-access')
            cluster: Cluster name (e.g., 'staging')

        Returns:
            CA key material

        Raises:
            CAUnavailable: If parameters are missing or cannot be parsed
        """
        key_path, cert_path = self._ca_paths(project_name, cluster)

        try:
            key_response = self.client.get_parameter(Name=key_path, WithDecryption=True)
            cert_response = self.client.get_parameter(Name=cert_path, WithDecryption=False)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code == "ParameterNotFound":
                raise CAUnavailable(
                    f"Cluster CA not found in SSM. Paths checked: {key_path}, {cert_path}", cause=e
                ) from e
            raise CAUnavailable(f"failed to read cluster CA from SSM: {error_code}", cause=e) from e

        key_pem = key_response["Parameter"]["Value"].encode("utf-8")
        cert_pem = cert_response["Parameter"]["Value"].encode("utf-8")

        try:
            return CAKeyMaterial(
                private_key=deserialize_private_key(key_pem),
                certificate=deserialize_certificate(cert_pem),
            )
        except ValueError as e:
            raise CAUnavailable(f"cluster CA in SSM is not valid PEM: {e}", cause=e) from e

    def put_cluster_ca(self, project_name: str, cluster: str, key_pem: bytes, cert_pem: bytes) -> None:
        """Store cluster CA key (SecureString) and certificate (String) in SSM.

        Args:
            project_name: Project name prefix
            cluster: Cluster name
            key_pem: CA private key PEM bytes
            cert_pem: CA certificate PEM bytes
        """
        key_path, cert_path = self._ca_paths(project_name, cluster)
        self.client.put_parameter(
            Name=key_path,
            Value=key_pem.decode("utf-8"),
            Type="SecureString",
            Overwrite=True,
        )
        self.client.put_parameter(
            Name=cert_path,
            Value=cert_pem.decode("utf-8"),
            Type="String",
            Overwrite=True,
        )
