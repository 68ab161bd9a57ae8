"""Tests for the convergence loop and desired resource assembly."""

import pytest

from contentcloud.config import INSTANCE_LABEL, OPERATOR_LABEL, Config
from contentcloud.errors import ConvergenceError, MissingSecretError, NoSuchComponentError
from contentcloud.milestones import Milestone
from contentcloud.models import ContentCloud
from contentcloud.targetstate import TargetState
from k8s_mock import MockCluster, content_cloud, owner_reference

FLAGS_OFF = {"management": False}


def make_target(
    spec: dict | None = None,
    status: dict | None = None,
    cluster: MockCluster | None = None,
    config: Config | None = None,
) -> TargetState:
    cr = ContentCloud.from_body(content_cloud(spec=spec, status=status))
    return TargetState(
        cr, cluster or MockCluster(), config or Config(insecure_database_password="pw")
    )


def names(resources: list[dict], kind: str) -> list[str]:
    return sorted(r["metadata"]["name"] for r in resources if r["kind"] == kind)


def put_ready_stateful_set(cluster: MockCluster, name: str) -> None:
    cluster.put(
        {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": {"name": name, "namespace": "default"},
            "spec": {"replicas": 1},
            "status": {"replicas": 1, "readyReplicas": 1},
        }
    )


class TestEmptyResource:
    """Tests for a custom resource with every optional feature off."""

    def test_reaches_ready_in_one_pass(self) -> None:
        """Test that vacuous readiness walks every stage up to Ready."""
        target = make_target({"with": FLAGS_OFF})

        resources = target.build_resources()

        assert resources == []
        assert target.milestone is Milestone.READY
        assert target.tracker.pending == []
        assert target.rounds == 6

    def test_builders_are_empty(self) -> None:
        """Test that each builder returns an empty list."""
        target = make_target({"with": FLAGS_OFF})
        target.converge()

        assert target.build_component_resources() == []
        assert target.build_extra_resources() == []
        assert target.build_ingress_resources() == []

    def test_convergence_cap(self) -> None:
        """Test that running out of rounds is an error."""
        target = make_target({"with": FLAGS_OFF}, config=Config(max_convergence_rounds=3))

        with pytest.raises(ConvergenceError) as exc_info:
            target.converge()

        assert "3" in str(exc_info.value)

    def test_converge_is_idempotent(self) -> None:
        """Test that converging twice does not run more rounds."""
        target = make_target({"with": FLAGS_OFF})
        target.converge()
        rounds = target.rounds

        target.converge()

        assert target.rounds == rounds


class TestManagedDatabase:
    """Tests for the managed MySQL and the content servers depending on it."""

    def test_initial_rollout(self) -> None:
        """Test the first pass: only the database is built, every secret is provisioned."""
        target = make_target({"with": {"databases": True}})

        resources = target.build_resources()

        assert target.milestone is Milestone.DEPLOYMENT_STARTED
        assert target.tracker.pending == ["mysql"]
        assert names(resources, "StatefulSet") == ["mysql"]
        assert names(resources, "PersistentVolumeClaim") == ["mysql-data"]
        assert names(resources, "ConfigMap") == ["mysql-initdb"]
        assert names(resources, "Secret") == ["jdbc-management", "jdbc-master", "mysql-root"]

    def test_users_sql_covers_every_jdbc_consumer(self) -> None:
        """Test that the init script creates a schema per jdbc secret."""
        target = make_target({"with": {"databases": True}})

        resources = target.build_resources()

        (config_map,) = [r for r in resources if r["kind"] == "ConfigMap"]
        sql = config_map["data"]["create-users.sql"]
        assert "CREATE SCHEMA IF NOT EXISTS `management`" in sql
        assert "CREATE SCHEMA IF NOT EXISTS `master`" in sql
        assert "IDENTIFIED BY 'pw'" in sql
        assert "`root`" not in sql

    def test_late_consumer_included(self) -> None:
        """Test that a user component requesting a schema extends the init script."""
        target = make_target(
            {
                "with": {"databases": True, "management": False},
                "components": [{"type": "generic", "name": "search", "schemas": {"jdbc": "idx"}}],
            }
        )

        resources = target.build_resources()

        (config_map,) = [r for r in resources if r["kind"] == "ConfigMap"]
        assert "`idx`" in config_map["data"]["create-users.sql"]
        assert "jdbc-idx" in names(resources, "Secret")

    def test_database_ready_advances(self) -> None:
        """Test that a ready database unlocks the content servers."""
        cluster = MockCluster()
        put_ready_stateful_set(cluster, "mysql")
        target = make_target({"with": {"databases": True}}, cluster=cluster)

        resources = target.build_resources()

        assert target.milestone is Milestone.DATABASES_READY
        assert target.tracker.pending == ["content-server/cms", "content-server/mls"]
        assert names(resources, "StatefulSet") == ["cms", "mls", "mysql"]

    def test_content_server_secret_env(self) -> None:
        """Test that content servers read their connection from the secret."""
        target = make_target({"with": {"databases": True}}, status={"milestone": "DatabasesReady"})

        resources = target.build_resources()

        (cms,) = [r for r in resources if names([r], "StatefulSet") == ["cms"]]
        env = cms["spec"]["template"]["spec"]["containers"][0]["env"]
        refs = {e["name"]: e["valueFrom"]["secretKeyRef"] for e in env if "valueFrom" in e}
        assert refs["JDBC_URL"] == {"name": "jdbc-management", "key": "url"}
        assert refs["JDBC_PASSWORD"] == {"name": "jdbc-management", "key": "password"}

    def test_management_without_databases(self) -> None:
        """Test that content servers need declared secrets when provisioning is off."""
        target = make_target({})

        with pytest.raises(MissingSecretError):
            target.build_resources()

    def test_declared_secrets_without_databases(self) -> None:
        """Test that declared secrets satisfy content servers without a database."""
        target = make_target(
            {
                "clientSecretRefs": {
                    "jdbc": {
                        "management": {"secretName": "cms-db"},
                        "master": {"secretName": "mls-db"},
                    }
                }
            }
        )

        resources = target.build_resources()

        assert names(resources, "Secret") == []
        assert target.milestone is Milestone.DATABASES_READY


class TestResourceMetadata:
    """Tests for labels and ownership of every desired resource."""

    def test_every_resource_owned_and_labeled(self) -> None:
        """Test that each desired object carries the labels and owner reference."""
        target = make_target({"with": {"databases": True}, "defaults": {"namePrefix": "prod"}})

        resources = target.build_resources()

        assert resources
        for resource in resources:
            metadata = resource["metadata"]
            assert metadata["namespace"] == "default"
            assert metadata["labels"][OPERATOR_LABEL] == "contentcloud"
            assert metadata["labels"][INSTANCE_LABEL] == "site"
            assert metadata["ownerReferences"] == [owner_reference()]
            assert metadata["name"].startswith("prod-")


class TestIngress:
    """Tests for site mapping ingresses."""

    SPEC = {
        "with": {"databases": True, "delivery": {"minCae": True}},
        "defaults": {"ingressDomain": "example.com"},
        "siteMappings": [{"hostname": "www", "primarySegment": "corporate"}],
    }

    def test_ingress_waits_for_target(self) -> None:
        """Test that no ingress is built before the routed component."""
        target = make_target(self.SPEC)

        resources = target.build_resources()

        assert names(resources, "Ingress") == []

    def test_ingress_routes_to_cae(self) -> None:
        """Test the ingress of a mapping whose target is built."""
        target = make_target(self.SPEC, status={"milestone": "Ready"})

        resources = target.build_resources()

        (ingress,) = [r for r in resources if r["kind"] == "Ingress"]
        (rule,) = ingress["spec"]["rules"]
        assert rule["host"] == "www.example.com"
        backend = rule["http"]["paths"][0]["backend"]["service"]
        assert backend == {"name": "cae", "port": {"number": 8080}}
        assert "nginx.ingress.kubernetes.io/rewrite-target" in ingress["metadata"]["annotations"]

    def test_cae_reads_from_live_content_server(self) -> None:
        """Test that the delivery engine is wired to the mls service."""
        target = make_target(self.SPEC, status={"milestone": "Ready"})

        resources = target.build_resources()

        (cae,) = [r for r in resources if names([r], "StatefulSet") == ["cae"]]
        env = cae["spec"]["template"]["spec"]["containers"][0]["env"]
        assert {"name": "REPOSITORY_URL", "value": "http://mls:8080/ior"} in env

    def test_ready_does_not_regress(self) -> None:
        """Test that an unready component at Ready keeps the milestone."""
        target = make_target(self.SPEC, status={"milestone": "Ready"})

        target.build_resources()

        assert target.milestone is Milestone.READY
        assert "cae" in target.tracker.pending


class TestRunOnceJob:
    """Tests for management jobs."""

    SPEC = {"with": FLAGS_OFF, "components": [{"type": "management-tools", "name": "reindex"}]}

    def test_job_built_at_trigger(self) -> None:
        """Test that the requested job is built while at RunJob."""
        target = make_target(self.SPEC, status={"milestone": "RunJob", "job": "reindex"})

        resources = target.build_resources()

        (job,) = resources
        assert job["kind"] == "Job"
        assert job["metadata"]["name"].startswith("reindex-")
        assert target.milestone is Milestone.RUN_JOB
        assert target.tracker.pending == ["reindex"]

    def test_job_not_built_when_ready(self) -> None:
        """Test that job components are idle outside the run-once stage."""
        target = make_target(self.SPEC, status={"milestone": "Ready"})

        assert target.build_resources() == []
        assert target.milestone is Milestone.READY

    def test_completed_job_returns_to_ready(self) -> None:
        """Test that a succeeded job ends the run-once stage and clears the pointer."""
        cluster = MockCluster()
        running = make_target(self.SPEC, status={"milestone": "RunJob", "job": "reindex"})
        (job,) = running.build_resources()
        cluster.put({**job, "status": {"succeeded": 1}})

        target = make_target(
            self.SPEC, status={"milestone": "RunJob", "job": "reindex"}, cluster=cluster
        )
        resources = target.build_resources()

        assert resources == []
        assert target.milestone is Milestone.READY
        assert target.cr.status.job == ""

    def test_job_name_changes_with_content(self) -> None:
        """Test that a changed job definition gets a new Job name."""
        status = {"milestone": "RunJob", "job": "reindex"}
        first = make_target(self.SPEC, status=status).build_resources()[0]
        changed_spec = {
            "with": FLAGS_OFF,
            "components": [{"type": "management-tools", "name": "reindex", "args": ["--full"]}],
        }
        second = make_target(changed_spec, status=status).build_resources()[0]

        assert first["metadata"]["name"] != second["metadata"]["name"]

    def test_unknown_job_dropped(self) -> None:
        """Test that a job pointer naming no component is cleared and Ready restored."""
        target = make_target(self.SPEC, status={"milestone": "RunJob", "job": "missing"})

        resources = target.build_resources()

        assert resources == []
        assert target.milestone is Milestone.READY
        assert target.cr.status.job == ""

    def test_find_run_once(self) -> None:
        """Test that only job components are found as run-once."""
        spec = {**self.SPEC, "components": [*self.SPEC["components"], {"type": "generic"}]}
        target = make_target(spec)
        target.converge()

        assert target.find_run_once("reindex").display_name == "reindex"
        with pytest.raises(NoSuchComponentError, match="not a job"):
            target.find_run_once("generic")
        with pytest.raises(NoSuchComponentError):
            target.find_run_once("missing")


class TestScaledToZero:
    """Tests for components declared with zero replicas."""

    SPEC = {
        "with": FLAGS_OFF,
        "components": [{"type": "generic", "name": "search", "replicas": 0}],
    }

    @staticmethod
    def put_stateful_set(cluster: MockCluster, status: dict) -> None:
        cluster.put(
            {
                "apiVersion": "apps/v1",
                "kind": "StatefulSet",
                "metadata": {"name": "search", "namespace": "default"},
                "spec": {"replicas": 0},
                "status": status,
            }
        )

    def test_scaled_down_is_ready(self) -> None:
        """Test that a StatefulSet scaled to zero does not block the rollout."""
        cluster = MockCluster()
        self.put_stateful_set(cluster, {"replicas": 0})
        target = make_target(self.SPEC, cluster=cluster)

        target.build_resources()

        assert target.milestone is Milestone.READY
        assert target.tracker.pending == []

    def test_replicas_still_terminating(self) -> None:
        """Test that the component waits until the last replica is gone."""
        cluster = MockCluster()
        self.put_stateful_set(cluster, {"replicas": 1, "readyReplicas": 1})
        target = make_target(self.SPEC, cluster=cluster)

        target.build_resources()

        assert target.milestone is Milestone.DELIVERY_SERVICES_READY
        assert target.tracker.pending == ["search"]

    def test_not_yet_created(self) -> None:
        """Test that a missing StatefulSet is not ready even at zero replicas."""
        target = make_target(self.SPEC)

        target.build_resources()

        assert target.tracker.pending == ["search"]
