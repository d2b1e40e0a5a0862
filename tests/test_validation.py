"""Unit tests for validation.py - cluster parameter validation."""

import pytest

from conftest import CLUSTER_CONFIGURATION
from validation import validate_cluster_parameters, validate_configuration_document


def params(**overrides):
    base = {
        "name": "test-cluster",
        "region": "eu-west-1",
        "clusterConfiguration": CLUSTER_CONFIGURATION,
    }
    base.update(overrides)
    return base


class TestValidateClusterParameters:
    """Tests for validate_cluster_parameters function."""

    def test_valid_parameters(self):
        """Test a complete cluster is accepted."""
        is_valid, error = validate_cluster_parameters(params())
        assert is_valid is True
        assert error is None

    @pytest.mark.parametrize(
        "name", ["a", "Cluster1", "hpc-prod-01", "a" + "b" * 59]
    )
    def test_valid_names(self, name):
        """Test names ParallelCluster accepts."""
        is_valid, _ = validate_cluster_parameters(params(name=name))
        assert is_valid is True

    @pytest.mark.parametrize(
        "name", ["", "1cluster", "-cluster", "my_cluster", "a.b", "a" * 61]
    )
    def test_invalid_names(self, name):
        """Test names ParallelCluster rejects."""
        is_valid, error = validate_cluster_parameters(params(name=name))
        assert is_valid is False
        assert error.startswith("name: ")

    @pytest.mark.parametrize(
        "region", ["us-east-1", "eu-west-2", "ap-southeast-1", "us-gov-west-1"]
    )
    def test_valid_regions(self, region):
        """Test well-formed AWS region names."""
        is_valid, _ = validate_cluster_parameters(params(region=region))
        assert is_valid is True

    @pytest.mark.parametrize("region", ["", "EU-WEST-1", "eu-west", "euwest1"])
    def test_invalid_regions(self, region):
        """Test malformed region names are rejected."""
        is_valid, error = validate_cluster_parameters(params(region=region))
        assert is_valid is False
        assert "region" in error

    def test_missing_fields(self):
        """Test missing required fields are reported at the root."""
        is_valid, error = validate_cluster_parameters({"name": "test-cluster"})
        assert is_valid is False
        assert "(root): 'region' is a required property" in error
        assert "'clusterConfiguration' is a required property" in error

    def test_unknown_fields_rejected(self):
        """Test fields outside the cluster parameters are rejected."""
        is_valid, error = validate_cluster_parameters(params(scheduler="slurm"))
        assert is_valid is False
        assert "Additional properties are not allowed" in error

    def test_all_errors_reported(self):
        """Test every schema violation appears in the message."""
        is_valid, error = validate_cluster_parameters(
            params(name="1bad", region="nowhere")
        )
        assert is_valid is False
        assert len(error.split("; ")) == 2

    def test_non_string_configuration(self):
        """Test the configuration must be a document, not a mapping."""
        is_valid, error = validate_cluster_parameters(
            params(clusterConfiguration={"Region": "eu-west-1"})
        )
        assert is_valid is False
        assert error.startswith("clusterConfiguration: ")

    def test_configuration_must_parse(self):
        """Test schema-valid parameters still need a YAML mapping."""
        is_valid, error = validate_cluster_parameters(
            params(clusterConfiguration="just a string")
        )
        assert is_valid is False
        assert error == "clusterConfiguration must be a YAML mapping"


class TestValidateConfigurationDocument:
    """Tests for validate_configuration_document function."""

    def test_mapping(self):
        """Test a YAML mapping is accepted."""
        assert validate_configuration_document(CLUSTER_CONFIGURATION) == (True, None)

    def test_invalid_yaml(self):
        """Test unparseable YAML is reported."""
        is_valid, error = validate_configuration_document("HeadNode: [unclosed")
        assert is_valid is False
        assert error.startswith("clusterConfiguration is not valid YAML")

    @pytest.mark.parametrize("document", ["- a\n- b\n", "42", ""])
    def test_non_mapping(self, document):
        """Test lists, scalars and empty documents are rejected."""
        is_valid, error = validate_configuration_document(document)
        assert is_valid is False
        assert error == "clusterConfiguration must be a YAML mapping"
