"""Tests for jobclient.manifest module."""

import copy

import pytest

from jobclient.errors import ConfigurationError, ManifestError
from jobclient.manifest import EndpointDescriptor, Manifest, load_manifest, read_yaml
from jobclient.retry import RetryPolicy
from tests.conftest import MANIFEST_DATA

MANIFEST_YAML = """\
name: jobs-api
base_url: ${JOBS_API_URL:-https://fallback.example.com}
retry_policies:
  patient:
    max_attempts: unbounded
endpoints:
  create_job:
    method: post
    path: v1/jobs
    async: true
    poll_endpoint: retrieve_job
  retrieve_job:
    method: POST
    path: /v1/jobs/retrieve
    retry: patient
"""


class TestEndpointDescriptor:
    def test_normalizes_method_and_path(self):
        endpoint = EndpointDescriptor(id="x", method="post", path="v1/things")
        assert endpoint.method == "POST"
        assert endpoint.path == "/v1/things"

    def test_rejects_unknown_method(self):
        with pytest.raises(ValueError):
            EndpointDescriptor(id="x", method="FETCH", path="/")

    def test_keys_default_to_id(self):
        endpoint = EndpointDescriptor(id="x", path="/")
        assert endpoint.breaker_key == "x"
        assert endpoint.rate_limit_key == "x"

    def test_async_alias(self):
        endpoint = EndpointDescriptor.model_validate(
            {"id": "x", "path": "/", "async": True, "poll_endpoint": "y"}
        )
        assert endpoint.is_async

    @pytest.mark.parametrize("method,safe", [("GET", True), ("PUT", True), ("POST", False), ("PATCH", False)])
    def test_safe_method(self, method, safe):
        assert EndpointDescriptor(id="x", method=method, path="/").safe_method is safe

    def test_frozen(self):
        endpoint = EndpointDescriptor(id="x", path="/")
        with pytest.raises(Exception):
            endpoint.path = "/other"


class TestManifest:
    """Tests for manifest validation."""

    def test_from_list(self, manifest):
        assert manifest.endpoint_ids() == [
            "create_job",
            "delete_job",
            "get_job",
            "retrieve_job",
            "send_message",
        ]
        assert manifest.fetch_endpoint("create_job").rate_limit_key == "jobs"

    def test_retry_policy_map(self, manifest):
        assert manifest.retry_policy_map()["patient"] == RetryPolicy(
            max_attempts=4, initial_delay=1.0, max_delay=8.0, jitter=0.0
        )

    def test_unknown_endpoint(self, manifest):
        with pytest.raises(ManifestError) as exc_info:
            manifest.fetch_endpoint("nope")
        assert "create_job" in exc_info.value.data["known_endpoints"]

    def test_duplicate_ids_rejected(self):
        data = copy.deepcopy(MANIFEST_DATA)
        data["endpoints"].append({"id": "get_job", "path": "/again"})
        with pytest.raises(ManifestError):
            Manifest.from_dict(data)

    def test_unknown_retry_policy_rejected(self):
        data = copy.deepcopy(MANIFEST_DATA)
        data["endpoints"][1]["retry"] = "missing"
        with pytest.raises(ManifestError):
            Manifest.from_dict(data)

    def test_async_without_poll_endpoint_rejected(self):
        data = copy.deepcopy(MANIFEST_DATA)
        del data["endpoints"][0]["poll_endpoint"]
        with pytest.raises(ManifestError):
            Manifest.from_dict(data)

    def test_async_with_unknown_poll_endpoint_rejected(self):
        data = copy.deepcopy(MANIFEST_DATA)
        data["endpoints"][0]["poll_endpoint"] = "ghost"
        with pytest.raises(ManifestError):
            Manifest.from_dict(data)

    def test_poll_endpoint_path_must_be_fillable(self):
        data = copy.deepcopy(MANIFEST_DATA)
        data["endpoints"][1]["path"] = "/v1/tenants/{tenant}/jobs/{request_id}"
        with pytest.raises(ManifestError):
            Manifest.from_dict(data)

    def test_poll_endpoint_may_use_job_id_params(self):
        data = copy.deepcopy(MANIFEST_DATA)
        data["endpoints"][1]["path"] = "/v1/jobs/{request_id}/:job_id"
        endpoint = Manifest.from_dict(data).fetch_endpoint("retrieve_job")
        assert endpoint.path_params == ["request_id", "job_id"]

    def test_defaults_fill_endpoints(self):
        data = copy.deepcopy(MANIFEST_DATA)
        data["defaults"] = {"timeout": 12.5, "retry": "patient", "headers": {"X-Team": "ml"}}
        data["endpoints"][4]["headers"] = {"X-Trace": "on"}
        data["endpoints"][4]["timeout"] = 3.0
        manifest = Manifest.from_dict(data)
        create = manifest.fetch_endpoint("create_job")
        assert create.timeout == 12.5
        assert create.retry == "patient"
        assert create.headers == {"X-Team": "ml"}
        message = manifest.fetch_endpoint("send_message")
        assert message.timeout == 3.0
        assert message.headers == {"X-Team": "ml", "X-Trace": "on"}

    def test_unknown_default_rejected(self):
        data = copy.deepcopy(MANIFEST_DATA)
        data["defaults"] = {"method": "POST"}
        with pytest.raises(ManifestError):
            Manifest.from_dict(data)

    def test_invalid_retry_policy_rejected(self):
        data = copy.deepcopy(MANIFEST_DATA)
        data["retry_policies"]["patient"]["jitter"] = 3.0
        with pytest.raises(ManifestError):
            Manifest.from_dict(data)

    def test_non_mapping_rejected(self):
        with pytest.raises(ManifestError):
            Manifest.from_dict(["not", "a", "mapping"])


class TestLoadManifest:
    def test_load_with_env_fallback(self, tmp_path, monkeypatch):
        monkeypatch.delenv("JOBS_API_URL", raising=False)
        path = tmp_path / "jobs.yaml"
        path.write_text(MANIFEST_YAML)
        manifest = load_manifest(path)
        assert manifest.base_url == "https://fallback.example.com"
        assert manifest.fetch_endpoint("create_job").path == "/v1/jobs"
        assert manifest.retry_policy_map()["patient"].max_attempts is None

    def test_load_with_env_value(self, tmp_path, monkeypatch):
        monkeypatch.setenv("JOBS_API_URL", "https://prod.example.com")
        path = tmp_path / "jobs.yaml"
        path.write_text(MANIFEST_YAML)
        assert load_manifest(path).base_url == "https://prod.example.com"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ManifestError):
            load_manifest(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("endpoints: [unclosed")
        with pytest.raises(ManifestError):
            load_manifest(path)

    def test_read_yaml_rejects_empty_and_lists(self, tmp_path):
        empty = tmp_path / "empty.yaml"
        empty.write_text("")
        listing = tmp_path / "list.yaml"
        listing.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            read_yaml(empty)
        with pytest.raises(ConfigurationError):
            read_yaml(listing)
