"""
Builders for the child resources owned by a cluster.

Pure functions: they only compute desired shapes, the phases decide when to
create or replace them.
"""
import copy
from datetime import datetime
from typing import Any, Dict, List, Optional

from dbcluster.models.cluster import Cluster, UpdateStrategy
from dbcluster.models.resources import BackupArtifact, Job, StatefulSet, VolumeClaim
from dbcluster.utils.patch import apply_merge_patch

STORAGE_VOLUME = "storage"
DATA_DIR = "/var/lib/mysql"
COMPONENT_LABEL = "app.kubernetes.io/component"
INIT_JOB_COMPONENT = "pb-init"
POD_NAME_LABEL = "statefulset.kubernetes.io/pod-name"


def owner_references(cluster: Cluster) -> List[Dict[str, Any]]:
    if not cluster.metadata.uid:
        return []
    return [
        {
            "apiVersion": cluster.api_version,
            "kind": cluster.kind,
            "name": cluster.name,
            "uid": cluster.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
    ]


def _metadata(cluster: Cluster, name: str, labels: Dict[str, str]) -> Dict[str, Any]:
    return {
        "name": name,
        "namespace": cluster.namespace,
        "labels": labels,
        "ownerReferences": owner_references(cluster),
    }


def _root_password_env(cluster: Cluster) -> List[Dict[str, Any]]:
    ref = cluster.spec.root_password_secret_key_ref
    if ref is None:
        return [{"name": "MARIADB_ALLOW_EMPTY_ROOT_PASSWORD", "value": "1"}]
    return [
        {
            "name": "MARIADB_ROOT_PASSWORD",
            "valueFrom": {"secretKeyRef": {"name": ref.name, "key": ref.key}},
        }
    ]


def _update_strategy(cluster: Cluster) -> Dict[str, Any]:
    # Primary-last rollouts delete Pods one by one, the StatefulSet must not do it itself.
    if cluster.spec.update_strategy == UpdateStrategy.ROLLING_UPDATE:
        return {"type": "RollingUpdate"}
    return {"type": "OnDelete"}


def stateful_set(cluster: Cluster, replicas: int) -> StatefulSet:
    """
    Desired StatefulSet for the cluster.

    The storage size lives in the volume claim template, which the API server
    treats as immutable; changing it requires deleting and recreating the
    StatefulSet.
    """
    labels = cluster.selector_labels()
    storage = cluster.spec.storage
    claim_spec: Dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": storage.size}},
    }
    if storage.storage_class_name:
        claim_spec["storageClassName"] = storage.storage_class_name

    container = {
        "name": "mariadb",
        "image": cluster.spec.image,
        "ports": [{"name": "mariadb", "containerPort": cluster.spec.port}],
        "env": _root_password_env(cluster),
        "volumeMounts": [{"name": STORAGE_VOLUME, "mountPath": DATA_DIR}],
        "readinessProbe": {
            "exec": {"command": ["bash", "-c", "mariadb -u root -p\"${MARIADB_ROOT_PASSWORD}\" -e 'SELECT 1;'"]},
            "initialDelaySeconds": 20,
            "periodSeconds": 5,
        },
    }
    init_container = {
        "name": "init",
        "image": cluster.spec.image,
        "command": ["bash", "-c", f"while [ -f {DATA_DIR}/.restoring ]; do sleep 1; done"],
        "volumeMounts": [{"name": STORAGE_VOLUME, "mountPath": DATA_DIR}],
    }

    manifest = {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(cluster, cluster.name, labels),
        "spec": {
            "serviceName": f"{cluster.name}-internal",
            "replicas": replicas,
            "podManagementPolicy": "Parallel",
            "updateStrategy": _update_strategy(cluster),
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {"initContainers": [init_container], "containers": [container]},
            },
            "volumeClaimTemplates": [
                {"metadata": {"name": STORAGE_VOLUME, "labels": labels}, "spec": claim_spec}
            ],
        },
    }
    return StatefulSet(
        name=cluster.name,
        namespace=cluster.namespace,
        labels=labels,
        replicas=replicas,
        storage_size=storage.size,
        manifest=manifest,
    )


def storage_volume_claim(cluster: Cluster, ordinal: int, snapshot_name: Optional[str] = None) -> VolumeClaim:
    """Storage claim of one node, optionally pre-populated from a VolumeSnapshot."""
    return VolumeClaim(
        name=cluster.volume_claim_name(ordinal),
        namespace=cluster.namespace,
        labels={**cluster.selector_labels(), POD_NAME_LABEL: cluster.pod_name(ordinal)},
        storage_request=cluster.spec.storage.size,
        storage_class_name=cluster.spec.storage.storage_class_name,
        snapshot_source=snapshot_name,
    )


def backup_from_template(cluster: Cluster, template: BackupArtifact, name: str) -> BackupArtifact:
    """On-demand copy of the template backup: same target, no schedule."""
    spec = copy.deepcopy(template.spec)
    spec.pop("schedule", None)
    return BackupArtifact(
        name=name,
        namespace=cluster.namespace,
        labels=cluster.selector_labels(),
        storage=template.storage,
        spec=spec,
    )


def init_job_labels(cluster: Cluster) -> Dict[str, str]:
    return {**cluster.selector_labels(), COMPONENT_LABEL: INIT_JOB_COMPONENT}


def restore_job(cluster: Cluster, ordinal: int, backup: BackupArtifact, recovery_time: datetime) -> Job:
    """
    Job restoring ``backup`` into the storage claim of ``ordinal``.

    Overrides from ``replication.replica.bootstrapFrom.restoreJob`` are merged
    into the Job spec.
    """
    name = cluster.init_job_name(ordinal)
    labels = init_job_labels(cluster)
    args = ["restore", "--backup", backup.name, "--target-time", recovery_time.isoformat(), "--path", DATA_DIR]
    if backup.files:
        args += ["--target-file", backup.target_file_for(recovery_time)]

    spec: Dict[str, Any] = {
        "backoffLimit": 5,
        "template": {
            "metadata": {"labels": labels},
            "spec": {
                "restartPolicy": "OnFailure",
                "containers": [
                    {
                        "name": "restore",
                        "image": cluster.spec.image,
                        "args": args,
                        "env": _root_password_env(cluster),
                        "volumeMounts": [{"name": STORAGE_VOLUME, "mountPath": DATA_DIR}],
                    }
                ],
                "volumes": [
                    {
                        "name": STORAGE_VOLUME,
                        "persistentVolumeClaim": {"claimName": cluster.volume_claim_name(ordinal)},
                    }
                ],
            },
        },
    }
    bootstrap_from = cluster.spec.replication.replica.bootstrap_from
    if bootstrap_from is not None and bootstrap_from.restore_job:
        spec = apply_merge_patch(spec, bootstrap_from.restore_job)

    manifest = {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": _metadata(cluster, name, labels),
        "spec": spec,
    }
    return Job(name=name, namespace=cluster.namespace, labels=labels, manifest=manifest)
