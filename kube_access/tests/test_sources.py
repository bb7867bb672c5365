"""Tests for resolving CA, ledger and role sources from script arguments."""

import argparse
from collections.abc import Generator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml

from kube_access.lib.ca_store import CA_CRL_FILENAME
from kube_access.lib.cert_utils import serialize_crl
from kube_access.lib.config import AccessConfig
from kube_access.lib.errors import CAUnavailable, InvalidRequest
from kube_access.lib.ledger import JsonFileLedger
from kube_access.lib.models import CAKeyMaterial, RoleDefinition
from kube_access.lib.signer import CertificateAuthoritySigner
from kube_access.lib.sources import (
    LEDGER_FILENAME,
    add_role_arguments,
    add_source_arguments,
    crl_publisher,
    load_ca,
    load_role,
    open_ledger,
)


class TestArguments:
    def test_role_and_role_file_are_exclusive(self) -> None:
        parser = argparse.ArgumentParser()
        add_role_arguments(parser)

        with pytest.raises(SystemExit):
            parser.parse_args(["--role", "viewer", "--role-file", "viewer.yaml"])

    def test_source_arguments_default_to_none(self) -> None:
        parser = argparse.ArgumentParser()
        add_source_arguments(parser)

        args = parser.parse_args([])

        assert (args.ca_dir, args.cluster, args.ledger_file, args.ledger_table) == (None, None, None, None)


class TestLoadCA:
    def test_from_directory(self, access_config: AccessConfig, ca_dir_on_disk: Path, cluster_ca: CAKeyMaterial) -> None:
        assert load_ca(access_config, ca_dir=ca_dir_on_disk).certificate == cluster_ca.certificate

    def test_from_ssm(self, access_config: AccessConfig, cluster_ca: CAKeyMaterial) -> None:
        with patch("kube_access.lib.sources.SSMClient") as mock_ssm:
            mock_ssm.return_value.get_cluster_ca.return_value = cluster_ca

            assert load_ca(access_config, cluster="staging") is cluster_ca

        mock_ssm.assert_called_once_with(access_config.region)
        mock_ssm.return_value.get_cluster_ca.assert_called_once_with("kube-access", "staging")

    def test_no_source(self, access_config: AccessConfig) -> None:
        with pytest.raises(CAUnavailable, match="no CA source"):
            load_ca(access_config)


class TestOpenLedger:
    """Tests for ledger selection precedence."""

    @pytest.fixture
    def mock_dynamodb(self) -> Generator[MagicMock]:
        with patch("kube_access.lib.sources.DynamoDBLedger") as mock:
            yield mock

    def test_explicit_file_wins(self, access_config: AccessConfig, tmp_path: Path, mock_dynamodb: MagicMock) -> None:
        ledger = open_ledger(access_config, ledger_file=tmp_path / "l.json", ledger_table="t", ca_dir=tmp_path)

        assert isinstance(ledger, JsonFileLedger)
        assert ledger.path == tmp_path / "l.json"
        mock_dynamodb.assert_not_called()

    def test_explicit_table_before_ca_dir(
        self, access_config: AccessConfig, tmp_path: Path, mock_dynamodb: MagicMock
    ) -> None:
        ledger = open_ledger(access_config, ledger_table="issued", ca_dir=tmp_path)

        assert ledger is mock_dynamodb.return_value
        mock_dynamodb.assert_called_once_with("issued", access_config.region)

    def test_ca_dir_ledger(self, access_config: AccessConfig, tmp_path: Path, mock_dynamodb: MagicMock) -> None:
        ledger = open_ledger(access_config, ca_dir=tmp_path)

        assert isinstance(ledger, JsonFileLedger)
        assert ledger.path == tmp_path / LEDGER_FILENAME

    def test_configured_table_by_default(self, access_config: AccessConfig, mock_dynamodb: MagicMock) -> None:
        open_ledger(access_config)

        mock_dynamodb.assert_called_once_with(access_config.ledger_table, access_config.region)


class TestLoadRole:
    def test_from_manifest_file(self, tmp_path: Path, pod_reader: RoleDefinition) -> None:
        path = tmp_path / "role.yaml"
        path.write_text(yaml.safe_dump(pod_reader.to_manifest()))

        assert load_role(role_file=path) == pod_reader

    def test_by_name(self) -> None:
        assert load_role(name="view") == RoleDefinition(name="view")
        assert load_role(name="edit", namespace="dev") == RoleDefinition(name="edit", namespace="dev")

    @pytest.mark.parametrize("content", ["kind: Deployment\n", "kind: [unclosed\n", ""])
    def test_invalid_manifest(self, tmp_path: Path, content: str) -> None:
        path = tmp_path / "role.yaml"
        path.write_text(content)

        with pytest.raises(InvalidRequest, match="invalid role manifest"):
            load_role(role_file=path)

    def test_nothing_given(self) -> None:
        with pytest.raises(InvalidRequest):
            load_role()


class TestCrlPublisher:
    def test_writes_file_and_uploads(
        self,
        access_config: AccessConfig,
        tmp_path: Path,
        signer: CertificateAuthoritySigner,
        cluster_ca: CAKeyMaterial,
    ) -> None:
        crl = signer.build_crl(cluster_ca)

        with patch("kube_access.lib.sources.S3Client") as mock_s3:
            mock_s3.return_value.upload_crl.return_value = "v1"
            crl_publisher(access_config, ca_dir=tmp_path, bucket="crl-bucket", key="staging.crl")(crl)

        assert (tmp_path / CA_CRL_FILENAME).read_bytes() == serialize_crl(crl)
        bucket, body, key = mock_s3.return_value.upload_crl.call_args[0]
        assert (bucket, key) == ("crl-bucket", "staging.crl")
        assert body == serialize_crl(crl)

    def test_without_destinations_does_nothing(
        self, access_config: AccessConfig, signer: CertificateAuthoritySigner, cluster_ca: CAKeyMaterial
    ) -> None:
        with patch("kube_access.lib.sources.S3Client") as mock_s3:
            crl_publisher(access_config)(signer.build_crl(cluster_ca))

        mock_s3.assert_not_called()
