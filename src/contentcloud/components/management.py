"""Run-once management jobs.

A job component is only built while the rollout sits at the run-once
milestone and ``status.job`` names it. The Job name carries a hash of the
job's content so that changing the job definition runs a fresh Job.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from ..milestones import Milestone, Readiness
from .base import Component, register_component

JOB_BACKOFF_LIMIT = 3
HASH_LENGTH = 8


@register_component("management-tools")
class ManagementToolsJob(Component):
    """A one-shot Job running management tooling against the content servers."""

    default_repository = "contentcloud/management-tools"
    default_milestone = Milestone.RUN_JOB

    @property
    def selected(self) -> bool:
        """Whether ``status.job`` asks for this job."""
        return self.target_state.cr.status.job == self.base_name

    @property
    def at_trigger(self) -> bool:
        return self.target_state.milestone is self.milestone

    def content_hash(self) -> str:
        content = {
            "image": self.image(self.default_repository),
            "args": self.spec.args,
            "env": self.spec.env,
            "schemas": self.secret_schemas(),
        }
        digest = hashlib.sha256(json.dumps(content, sort_keys=True).encode("utf-8"))
        return digest.hexdigest()[:HASH_LENGTH]

    @property
    def job_name(self) -> str:
        return self.target_state.resource_name(self.object_name, self.content_hash())

    def is_build_resources(self) -> bool:
        return self.selected and self.at_trigger

    def is_ready(self) -> Readiness:
        if not (self.selected and self.at_trigger):
            return Readiness.NOT_APPLICABLE
        live = self.target_state.cluster.get(
            "batch/v1", "Job", self.target_state.namespace, self.job_name
        )
        succeeded = ((live or {}).get("status") or {}).get("succeeded") or 0
        return Readiness.READY if succeeded > 0 else Readiness.NOT_READY

    def build_resources(self) -> list[dict[str, Any]]:
        container: dict[str, Any] = {
            "name": self.object_name,
            "image": self.image(self.default_repository),
            "imagePullPolicy": self.target_state.defaults.image_pull_policy,
            "env": list(self.spec.env) + self.secret_env(),
        }
        if self.spec.args:
            container["args"] = list(self.spec.args)

        return [
            {
                "apiVersion": "batch/v1",
                "kind": "Job",
                "metadata": self.metadata(self.job_name),
                "spec": {
                    "backoffLimit": JOB_BACKOFF_LIMIT,
                    "template": {
                        "metadata": {
                            "labels": self.target_state.selector_labels(self.object_name)
                        },
                        "spec": {
                            "restartPolicy": "Never",
                            "containers": [container],
                        },
                    },
                },
            }
        ]
