"""Tests for kryten_dispatch.permissions module."""

from __future__ import annotations

import pytest

from kryten_dispatch.permissions import ROLE_HIERARCHY, has_permission, is_known_level, role_label
from kryten_dispatch.viewer_ledger import Viewer


def _viewer(**flags) -> Viewer:
    return Viewer(identity_key="v", username="v", **flags)


class TestHasPermission:

    def test_everyone_always_passes(self):
        assert has_permission(_viewer(), "everyone")
        assert has_permission(_viewer(), "EVERYONE")

    def test_plain_viewer_denied_above_everyone(self):
        viewer = _viewer()
        for level in ROLE_HIERARCHY[1:]:
            assert not has_permission(viewer, level)

    @pytest.mark.parametrize("level", ["everyone", "subscriber", "vip", "moderator"])
    def test_moderator_satisfies_lower_levels(self, level: str):
        assert has_permission(_viewer(is_moderator=True), level)

    def test_moderator_not_broadcaster(self):
        assert not has_permission(_viewer(is_moderator=True), "broadcaster")

    def test_broadcaster_satisfies_everything(self):
        viewer = _viewer(is_broadcaster=True)
        assert all(has_permission(viewer, level) for level in ROLE_HIERARCHY)

    def test_subscriber_not_vip(self):
        viewer = _viewer(is_subscriber=True)
        assert has_permission(viewer, "subscriber")
        assert not has_permission(viewer, "vip")

    def test_vip_without_subscriber_flag_still_subscriber_level(self):
        assert has_permission(_viewer(is_vip=True), "subscriber")

    def test_unknown_level_fails_closed(self):
        assert not has_permission(_viewer(is_broadcaster=True), "admin")
        assert not has_permission(_viewer(is_broadcaster=True), "")
        assert not is_known_level("admin")
        assert is_known_level("VIP")


class TestRoleLabel:

    def test_labels(self):
        assert role_label(_viewer()) == "Viewer"
        assert role_label(_viewer(is_vip=True)) == "VIP"
        assert role_label(_viewer(is_subscriber=True, is_moderator=True)) == "Moderator"
        assert role_label(_viewer(is_broadcaster=True)) == "Broadcaster"
