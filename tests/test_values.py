"""Tests for composing HelmRelease values."""

import base64
from typing import Any

import pytest

from flux_release.exceptions import InvalidValuesReference
from flux_release.manifest import (
    ConfigMap,
    HelmChart,
    HelmRelease,
    Secret,
    ValuesReference,
)
from flux_release.store import InMemoryStore
from flux_release.values import StoreValuesComposer


def helm_release(**kwargs: Any) -> HelmRelease:
    return HelmRelease(
        name="podinfo",
        namespace="podinfo",
        chart=HelmChart(
            name="podinfo",
            version="6.5.4",
            repo_name="podinfo",
            repo_namespace="flux-system",
        ),
        **kwargs,
    )


def b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    """Create a store with the objects referenced by the releases."""
    store = InMemoryStore()
    store.add_object(
        ConfigMap(
            name="podinfo-values",
            namespace="podinfo",
            data={
                "values.yaml": "replicaCount: 2\nimage:\n  tag: 6.5.3\n",
                "some-key": "example.com",
                "empty.yaml": "",
                "list.yaml": "- a\n- b\n",
            },
        )
    )
    store.add_object(
        ConfigMap(
            name="podinfo-binary",
            namespace="podinfo",
            binary_data={"values.yaml": b64("image:\n  repository: podinfo\n")},
        )
    )
    store.add_object(
        Secret(
            name="podinfo-secret",
            namespace="podinfo",
            data={"values.yaml": b64("ingress:\n  host: secret.example.com\n")},
            string_data={"password": "hunter2"},
        )
    )
    store.add_object(
        ConfigMap(
            name="other-values",
            namespace="other",
            data={"values.yaml": "replicaCount: 5\n"},
        )
    )
    return store


async def test_inline_values(store: InMemoryStore) -> None:
    """Test a release with only inline values."""
    composer = StoreValuesComposer(store)
    values = {"replicaCount": 1}
    assert await composer.compose(helm_release(values=values)) == values
    assert await composer.compose(helm_release()) == {}


async def test_merge_order(store: InMemoryStore) -> None:
    """Test references merge in order and inline values take precedence."""
    release = helm_release(
        values={"image": {"tag": "6.5.4"}},
        values_from=[
            ValuesReference(kind="ConfigMap", name="podinfo-values"),
            ValuesReference(kind="ConfigMap", name="podinfo-binary"),
            ValuesReference(kind="Secret", name="podinfo-secret"),
        ],
    )
    values = await StoreValuesComposer(store).compose(release)
    assert values == {
        "replicaCount": 2,
        "image": {"tag": "6.5.4", "repository": "podinfo"},
        "ingress": {"host": "secret.example.com"},
    }


async def test_inline_values_not_modified(store: InMemoryStore) -> None:
    """Test composing does not change the values of the release."""
    inline = {"image": {"tag": "6.5.4"}}
    release = helm_release(
        values=inline,
        values_from=[ValuesReference(kind="ConfigMap", name="podinfo-values")],
    )
    values = await StoreValuesComposer(store).compose(release)
    values["image"]["tag"] = "latest"
    assert inline == {"image": {"tag": "6.5.4"}}


async def test_target_path(store: InMemoryStore) -> None:
    """Test a value stored at a target path."""
    release = helm_release(
        values={"ingress": {"enabled": True}},
        values_from=[
            ValuesReference(
                kind="ConfigMap",
                name="podinfo-values",
                values_key="some-key",
                target_path="ingress.hosts\\.primary",
            ),
            ValuesReference(
                kind="Secret",
                name="podinfo-secret",
                values_key="password",
                target_path="auth.password",
            ),
        ],
    )
    values = await StoreValuesComposer(store).compose(release)
    assert values == {
        "ingress": {"enabled": True, "hosts.primary": "example.com"},
        "auth": {"password": "hunter2"},
    }


async def test_empty_values_key(store: InMemoryStore) -> None:
    """Test a key holding an empty document."""
    release = helm_release(
        values_from=[
            ValuesReference(
                kind="ConfigMap", name="podinfo-values", values_key="empty.yaml"
            )
        ],
    )
    assert await StoreValuesComposer(store).compose(release) == {}


async def test_values_not_a_dict(store: InMemoryStore) -> None:
    """Test a key holding a document that is not a mapping."""
    release = helm_release(
        values_from=[
            ValuesReference(
                kind="ConfigMap", name="podinfo-values", values_key="list.yaml"
            )
        ],
    )
    with pytest.raises(InvalidValuesReference, match="to be a dict"):
        await StoreValuesComposer(store).compose(release)


async def test_reference_other_namespace(store: InMemoryStore) -> None:
    """Test references are only looked up in the release namespace."""
    release = helm_release(
        values_from=[ValuesReference(kind="ConfigMap", name="other-values")],
    )
    with pytest.raises(
        InvalidValuesReference, match="Unable to find ConfigMap podinfo/other-values"
    ):
        await StoreValuesComposer(store).compose(release)


@pytest.mark.parametrize(
    "ref",
    [
        ValuesReference(kind="ConfigMap", name="missing", optional=True),
        ValuesReference(
            kind="ConfigMap",
            name="podinfo-values",
            values_key="missing.yaml",
            optional=True,
        ),
    ],
)
async def test_optional_reference(store: InMemoryStore, ref: ValuesReference) -> None:
    """Test missing optional references are skipped."""
    release = helm_release(values={"replicaCount": 1}, values_from=[ref])
    assert await StoreValuesComposer(store).compose(release) == {"replicaCount": 1}


async def test_missing_key(store: InMemoryStore) -> None:
    """Test a required key that does not exist."""
    release = helm_release(
        values_from=[
            ValuesReference(
                kind="ConfigMap", name="podinfo-values", values_key="missing.yaml"
            )
        ],
    )
    with pytest.raises(InvalidValuesReference, match="Unable to find key"):
        await StoreValuesComposer(store).compose(release)


async def test_unsupported_kind(store: InMemoryStore) -> None:
    """Test a reference to a kind that cannot hold values."""
    release = helm_release(
        values_from=[ValuesReference(kind="Deployment", name="podinfo")],
    )
    with pytest.raises(InvalidValuesReference, match="Unsupported valuesFrom kind"):
        await StoreValuesComposer(store).compose(release)


async def test_invalid_secret_data() -> None:
    """Test secret data that is not base64 encoded."""
    store = InMemoryStore()
    store.add_object(
        Secret(name="broken", namespace="podinfo", data={"values.yaml": "abc"})
    )
    release = helm_release(
        values_from=[ValuesReference(kind="Secret", name="broken")],
    )
    with pytest.raises(InvalidValuesReference, match="Unable to decode data"):
        await StoreValuesComposer(store).compose(release)
