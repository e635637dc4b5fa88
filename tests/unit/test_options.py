# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Unit tests for the options module."""

from datetime import timedelta

import pytest

from mesh_trust.options import (
    CertType,
    IssueOptions,
    for_common_name,
    for_common_name_prefix,
    for_ingress_gateway,
    for_service_identity,
)


@pytest.mark.parametrize(
    "options,expected",
    [
        (for_common_name_prefix("osm-controller"), "osm-controller.cluster.local"),
        (for_common_name("osm-validator.osm-system.svc"), "osm-validator.osm-system.svc"),
        (for_service_identity("bookbuyer", "bookstore"), "bookbuyer.bookstore.cluster.local"),
        (for_ingress_gateway("ingress", "osm-system"), "ingress.osm-system.cluster.local"),
    ],
)
def test_common_name(options, expected):
    """The trust domain is appended unless a full common name is given."""
    assert options.with_trust_domain("cluster.local", False).common_name() == expected


def test_common_name_without_trust_domain():
    """Without a trust domain the prefix is used as is."""
    assert IssueOptions(cn_prefix="plain").common_name() == "plain"


def test_uri_san():
    """A SPIFFE id is only produced when SPIFFE is enabled."""
    options = for_service_identity("bookbuyer", "bookstore")
    assert options.uri_san("cluster.local") is None

    bound = options.with_trust_domain("cluster.local", True)
    assert bound.uri_san() == "spiffe://cluster.local/bookbuyer/bookstore"


def test_cache_keys_do_not_collide():
    """Service and ingress certificates of one account are cached apart."""
    service = for_service_identity("gw", "edge")
    ingress = for_ingress_gateway("gw", "edge")

    assert service.cache_key != ingress.cache_key
    assert for_common_name_prefix("osm-controller").cache_key == "osm-controller"


def test_helpers_set_type_and_validity():
    """Helpers pick the certificate type and keep explicit validity."""
    hour = timedelta(hours=1)
    assert for_service_identity("a", "b", hour).cert_type == CertType.SERVICE
    assert for_service_identity("a", "b", hour).validity == hour
    assert for_ingress_gateway("a", "b").cert_type == CertType.INGRESS_GATEWAY
    assert for_common_name("x").full_cn
    assert for_common_name_prefix("x").cert_type == CertType.INTERNAL
