"""Pod manifest construction.

``build_pod_manifest`` turns the validated Pod template and a ``Workload``
into the camelCase Pod document sent to the API server. Init containers,
sidecars, volumes, affinity and security context are passed through
verbatim; the plugin container is assembled from its template options plus
the workload.
"""

from __future__ import annotations

from typing import Any

from podlink.config.models import Container, PodConfig
from podlink.kube._types import Workload

DEFAULT_GENERATE_NAME = "podlink-"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "podlink"


def _dump(model: Any) -> Any:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _merge_env(template_env: list[dict[str, Any]], workload_env: dict[str, str]) -> list[dict[str, Any]]:
    """Template env first; workload values replace entries with the same name."""
    merged = [dict(entry) for entry in template_env if entry["name"] not in workload_env]
    merged.extend({"name": name, "value": value} for name, value in workload_env.items())
    return merged


def plugin_container_manifest(pod_config: PodConfig, workload: Workload) -> dict[str, Any]:
    plugin = pod_config.spec.plugin_container
    container: dict[str, Any] = {"name": plugin.name, "image": workload.image}
    if workload.command is not None:
        container["command"] = list(workload.command)
    if workload.args is not None:
        container["args"] = list(workload.args)
    if workload.working_dir:
        container["workingDir"] = workload.working_dir

    options = _dump(plugin)
    options.pop("name", None)
    env = _merge_env(options.pop("env", []), workload.env)
    if env:
        container["env"] = env
    container.update(options)

    # Attach needs an open stdin; stdinOnce closes it when the attach session ends.
    container["stdin"] = True
    container["stdinOnce"] = True
    container["tty"] = False
    return container


def _container_manifest(container: Container) -> dict[str, Any]:
    return _dump(container)


def build_pod_manifest(pod_config: PodConfig, workload: Workload) -> dict[str, Any]:
    """Return the Pod resource body for one session.

    Example:
        >>> body = build_pod_manifest(config.pod, Workload(image="busybox", command=["echo", "ok"]))
        >>> body["spec"]["containers"][0]["name"]
        'podlink-plugin-container'
    """
    meta = pod_config.metadata
    spec = pod_config.spec

    metadata: dict[str, Any] = {"namespace": meta.namespace}
    if meta.name:
        metadata["name"] = meta.name
    else:
        metadata["generateName"] = meta.generate_name or DEFAULT_GENERATE_NAME
    metadata["labels"] = {**meta.labels, MANAGED_BY_LABEL: MANAGED_BY_VALUE}
    if meta.annotations:
        metadata["annotations"] = dict(meta.annotations)

    pod_spec: dict[str, Any] = {
        "restartPolicy": "Never",
        "containers": [plugin_container_manifest(pod_config, workload)]
        + [_container_manifest(c) for c in spec.containers],
    }
    if spec.init_containers:
        pod_spec["initContainers"] = [_container_manifest(c) for c in spec.init_containers]
    if spec.volumes:
        pod_spec["volumes"] = [_dump(v) for v in spec.volumes]
    if spec.node_selector:
        pod_spec["nodeSelector"] = dict(spec.node_selector)
    if spec.affinity is not None:
        affinity = _dump(spec.affinity)
        if affinity:
            pod_spec["affinity"] = affinity
    if spec.security_context:
        pod_spec["securityContext"] = dict(spec.security_context)
    if spec.image_pull_secrets:
        pod_spec["imagePullSecrets"] = [_dump(ref) for ref in spec.image_pull_secrets]

    return {"apiVersion": "v1", "kind": "Pod", "metadata": metadata, "spec": pod_spec}
