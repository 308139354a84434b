"""Manifest construction for the objects owned by a VirtualDatabase.

Plain functions returning API-ready dictionaries. They are deterministic so
that comparing a rendered manifest with the live object is meaningful.
"""

from __future__ import annotations

import base64
import re
from typing import Any

from .models import EnvVar, VirtualDatabase

# Pod template annotation carrying the config digest; changing it rolls the pods
CONFIG_DIGEST_ANNOTATION = "teiid.io/config-digest"
SPEC_DIGEST_ANNOTATION = "teiid.io/digest"
SPEC_DIGEST_ENV = "DIGEST"

BUILD_NUMBER_ANNOTATION = "openshift.io/build.number"
SERVING_CERT_ANNOTATION = "service.beta.openshift.io/serving-cert-secret-name"

KEYSTORE_PASSWORD = "changeit"
KEYSTORE_MOUNT_PATH = "/etc/tls/private"
KEYSTORE_FILE = "keystore.pkcs12"
TRUSTSTORE_FILE = "truststore.pkcs12"

HTTP_PORT = 8080
HTTPS_PORT = 8443
JDBC_PORT = 31000
PG_PORT = 35432
PROMETHEUS_PORT = 9779

ODATA_PATH = "/odata"

_ENV_NAME_INVALID = re.compile(r"[^A-Za-z0-9_]")


def builder_name(vdb: VirtualDatabase) -> str:
    return f"{vdb.metadata.name}-builder"


def keystore_secret_name(vdb: VirtualDatabase) -> str:
    return f"{vdb.metadata.name}-keystore"


def labels(vdb: VirtualDatabase) -> dict[str, str]:
    """Labels stamped on every owned object, used to map events back to the owner."""
    return {"app": vdb.metadata.name, "teiid.io/vdb": vdb.metadata.name}


def _metadata(vdb: VirtualDatabase, name: str, **extra: Any) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": vdb.metadata.namespace,
        "labels": labels(vdb),
        "ownerReferences": [vdb.owner_reference()],
    }
    metadata.update(extra)
    return metadata


def env_entry(env: EnvVar, name: str | None = None) -> dict[str, Any]:
    """Render an EnvVar in container format, optionally renamed."""
    entry = env.model_dump(by_alias=True, exclude_none=True, mode="json")
    if name is not None:
        entry["name"] = name
    return entry


def datasource_env_name(datasource: str, prop: str) -> str:
    """Environment name for one data source property, e.g. ``SALES_DB_URL``."""
    return _ENV_NAME_INVALID.sub("_", f"{datasource}_{prop}").upper()


def render_env(vdb: VirtualDatabase) -> list[dict[str, Any]]:
    """Container environment: user env followed by flattened data source properties."""
    env = [env_entry(e) for e in vdb.spec.env]
    for datasource in vdb.spec.datasources:
        for prop in datasource.properties:
            env.append(env_entry(prop, datasource_env_name(datasource.name, prop.name)))
    if vdb.spec.jaeger:
        env.append({"name": "JAEGER_AGENT_HOST", "value": vdb.spec.jaeger})
    env.extend(
        [
            {"name": "KEYSTORE_PATH", "value": f"{KEYSTORE_MOUNT_PATH}/{KEYSTORE_FILE}"},
            {"name": "TRUSTSTORE_PATH", "value": f"{KEYSTORE_MOUNT_PATH}/{TRUSTSTORE_FILE}"},
            {
                "name": "KEYSTORE_PASSWORD",
                "valueFrom": {
                    "secretKeyRef": {"name": keystore_secret_name(vdb), "key": "password"}
                },
            },
        ]
    )
    return env


# =============================================================================
# Builds
# =============================================================================


def builder_build_config(vdb: VirtualDatabase, base_image: str) -> dict[str, Any]:
    """BuildConfig producing the base builder image with build tooling preloaded."""
    name = builder_name(vdb)
    return {
        "apiVersion": "build.openshift.io/v1",
        "kind": "BuildConfig",
        "metadata": _metadata(vdb, name),
        "spec": {
            "runPolicy": "SerialLatestOnly",
            "source": {"type": "Dockerfile", "dockerfile": f"FROM {base_image}\n"},
            "strategy": {
                "type": "Docker",
                "dockerStrategy": {"from": {"kind": "DockerImage", "name": base_image}},
            },
            "output": {"to": {"kind": "ImageStreamTag", "name": f"{name}:latest"}},
        },
    }


def service_build_config(vdb: VirtualDatabase) -> dict[str, Any]:
    """BuildConfig producing the service image from the packaged artifacts.

    The spec digest is injected as a build env var so a changed digest is
    visible on the BuildConfig itself.
    """
    env = [{"name": SPEC_DIGEST_ENV, "value": vdb.status.digest}]
    env.extend(env_entry(e) for e in vdb.spec.build.env)
    return {
        "apiVersion": "build.openshift.io/v1",
        "kind": "BuildConfig",
        "metadata": _metadata(vdb, vdb.metadata.name),
        "spec": {
            "runPolicy": "SerialLatestOnly",
            "source": {"type": "Binary", "binary": {}},
            "strategy": {
                "type": "Source",
                "sourceStrategy": {
                    "from": {"kind": "ImageStreamTag", "name": f"{builder_name(vdb)}:latest"},
                    "env": env,
                    "incremental": True,
                },
            },
            "output": {"to": {"kind": "ImageStreamTag", "name": f"{vdb.metadata.name}:latest"}},
        },
    }


# =============================================================================
# Runtime
# =============================================================================


def service(vdb: VirtualDatabase) -> dict[str, Any]:
    name = vdb.metadata.name
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(vdb, name, annotations={SERVING_CERT_ANNOTATION: name}),
        "spec": {
            "type": vdb.spec.service_type,
            "selector": {"app": name},
            "ports": [
                {"name": "http", "port": HTTP_PORT, "targetPort": HTTP_PORT},
                {"name": "https", "port": HTTPS_PORT, "targetPort": HTTPS_PORT},
                {"name": "jdbc", "port": JDBC_PORT, "targetPort": JDBC_PORT},
                {"name": "pg", "port": PG_PORT, "targetPort": PG_PORT},
                {"name": "prometheus", "port": PROMETHEUS_PORT, "targetPort": PROMETHEUS_PORT},
            ],
        },
    }


def route(vdb: VirtualDatabase) -> dict[str, Any]:
    return {
        "apiVersion": "route.openshift.io/v1",
        "kind": "Route",
        "metadata": _metadata(vdb, vdb.metadata.name),
        "spec": {
            "to": {"kind": "Service", "name": vdb.metadata.name},
            "port": {"targetPort": "https"},
            "tls": {"termination": "passthrough"},
        },
    }


def route_url(host: str) -> str:
    return f"https://{host}{ODATA_PATH}"


def deployment(vdb: VirtualDatabase, image: str, config_digest: str) -> dict[str, Any]:
    name = vdb.metadata.name
    container: dict[str, Any] = {
        "name": name,
        "image": image,
        "env": render_env(vdb),
        "ports": [
            {"name": "http", "containerPort": HTTP_PORT},
            {"name": "https", "containerPort": HTTPS_PORT},
            {"name": "jdbc", "containerPort": JDBC_PORT},
            {"name": "pg", "containerPort": PG_PORT},
            {"name": "prometheus", "containerPort": PROMETHEUS_PORT},
        ],
        "volumeMounts": [{"name": "keystore", "mountPath": KEYSTORE_MOUNT_PATH, "readOnly": True}],
        "readinessProbe": {
            "httpGet": {"path": "/actuator/health", "port": HTTP_PORT},
            "initialDelaySeconds": 30,
        },
    }
    resources = vdb.spec.resources.model_dump(exclude_defaults=True)
    if resources:
        container["resources"] = resources
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(vdb, name),
        "spec": {
            "replicas": vdb.spec.replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {
                    "labels": labels(vdb),
                    "annotations": {
                        CONFIG_DIGEST_ANNOTATION: config_digest,
                        SPEC_DIGEST_ANNOTATION: vdb.status.digest,
                    },
                },
                "spec": {
                    "containers": [container],
                    "volumes": [
                        {"name": "keystore", "secret": {"secretName": keystore_secret_name(vdb)}}
                    ],
                },
            },
        },
    }


def keystore_secret(
    vdb: VirtualDatabase, keystore: bytes, truststore: bytes, password: str
) -> dict[str, Any]:
    def encode(value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(vdb, keystore_secret_name(vdb)),
        "type": "Opaque",
        "data": {
            KEYSTORE_FILE: encode(keystore),
            TRUSTSTORE_FILE: encode(truststore),
            "password": encode(password.encode("utf-8")),
        },
    }


def service_monitor(vdb: VirtualDatabase) -> dict[str, Any]:
    return {
        "apiVersion": "monitoring.coreos.com/v1",
        "kind": "ServiceMonitor",
        "metadata": _metadata(vdb, vdb.metadata.name),
        "spec": {
            "selector": {"matchLabels": {"app": vdb.metadata.name}},
            "endpoints": [{"port": "prometheus", "path": "/actuator/prometheus"}],
        },
    }


def cache(vdb: VirtualDatabase, cluster_name: str) -> dict[str, Any]:
    """Cache definition for the materialization store of one virtual database."""
    return {
        "apiVersion": "infinispan.org/v2alpha1",
        "kind": "Cache",
        "metadata": _metadata(vdb, vdb.metadata.name),
        "spec": {"clusterName": cluster_name, "name": vdb.metadata.name},
    }
