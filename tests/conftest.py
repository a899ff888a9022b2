"""Pytest configuration and fixtures."""

from datetime import datetime

import pytest
from unittest.mock import AsyncMock, MagicMock

METADATA_YAML = """\
apiVersion: clusterctl.cluster.x-k8s.io/v1alpha3
kind: Metadata
releaseSeries:
  - major: 1
    minor: 4
    contract: v1beta1
  - major: 1
    minor: 5
    contract: v1beta1
  - major: 0
    minor: 4
    contract: v1alpha4
  - major: 0
    minor: 3
    contract: v1alpha3
"""

COMPONENTS_YAML = """\
apiVersion: v1
kind: Namespace
metadata:
  name: capa-system
---
apiVersion: apiextensions.k8s.io/v1
kind: CustomResourceDefinition
metadata:
  name: awsclusters.infrastructure.cluster.x-k8s.io
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: capa-controller-manager
  namespace: capa-system
spec:
  replicas: 1
  template:
    spec:
      containers:
        - name: manager
          image: registry.k8s.io/capa:${CAPA_VERSION:=v1.5.0}
          args:
            - --leader-elect
            - --v=2
          env:
            - name: AWS_REGION
              value: ${AWS_REGION}
"""


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def metadata_yaml():
    return METADATA_YAML


@pytest.fixture
def components_yaml():
    return COMPONENTS_YAML


@pytest.fixture
def sample_provider_row():
    """Sample provider row as returned by DatabaseManager."""
    now = datetime(2024, 1, 1, 12, 0, 0)
    return {
        "id": 1,
        "name": "aws",
        "namespace": "capa-system",
        "kind": "InfrastructureProvider",
        "spec": {"version": "v1.5.0", "secret_name": "aws-variables"},
        "status": {},
        "generation": 1,
        "last_attempted_generation": 0,
        "state": "pending",
        "status_message": None,
        "retry_count": 0,
        "parked": False,
        "next_reconcile_time": now,
        "last_reconcile_time": None,
        "created_at": now,
        "updated_at": now,
        "deleted_at": None,
    }


@pytest.fixture
def core_provider_row(sample_provider_row):
    """A ready core provider row."""
    return {
        **sample_provider_row,
        "id": 2,
        "name": "cluster-api",
        "namespace": "capi-system",
        "kind": "CoreProvider",
        "spec": {"version": "v1.5.0"},
        "status": {
            "contract": "v1beta1",
            "observed_generation": 1,
            "conditions": [{"type": "ProviderInstalled", "status": "True"}],
        },
        "state": "ready",
    }
