"""
Unit tests for the remote object mirror.
"""

import asyncio
import pytest
from keybridge.channel import LoopbackChannel
from keybridge.dispatcher import OperationDispatcher
from keybridge.mirror import RemoteFunction, RemoteObject, build_mirror, materialize
from keybridge.peer import Peer
from keybridge.protocol import PeerPropertyDescriptor


class TestMirrorShape:
    """Tests for the mirrored object graph."""

    @pytest.mark.p0
    def test_mirror_matches_description(self, dispatcher):
        """Test the mirror has exactly the described members."""
        mirror = asyncio.run(build_mirror(dispatcher, True))

        assert sorted(mirror) == ["calls", "events", "runtime", "settings", "tabs"]
        assert sorted(mirror.tabs) == ["count", "fetch_title", "query"]
        assert sorted(dir(mirror.settings)) == ["retries", "theme"]
        assert isinstance(mirror.tabs, RemoteObject)
        assert isinstance(mirror.tabs.query, RemoteFunction)
        assert mirror.tabs.query.path == "tabs.query"
        assert "count" in mirror.tabs
        assert len(mirror.runtime) == 2

    @pytest.mark.p0
    def test_unknown_member(self, dispatcher):
        """Test names the peer did not describe do not exist."""
        mirror = asyncio.run(build_mirror(dispatcher, True))

        with pytest.raises(AttributeError, match="no member 'windows'"):
            mirror.windows

    @pytest.mark.p1
    def test_mirror_is_read_only(self, dispatcher):
        """Test assigning a mirror attribute raises."""
        mirror = asyncio.run(build_mirror(dispatcher, True))

        with pytest.raises(AttributeError, match="read-only"):
            mirror.tabs.count = 4

    @pytest.mark.p1
    def test_depth_limit(self, peer_namespace):
        """Test objects below the peer's depth limit become plain values."""
        dispatcher = OperationDispatcher(LoopbackChannel(Peer(peer_namespace, max_depth=1)))

        async def scenario():
            mirror = await build_mirror(dispatcher, True)
            return await mirror.tabs

        tabs = asyncio.run(scenario())

        assert isinstance(tabs, dict)
        assert tabs["count"] == 3

    @pytest.mark.p1
    def test_unknown_descriptor_type_is_value(self):
        """Test descriptor types other than object/function are values."""
        descriptors = [
            PeerPropertyDescriptor.model_validate({"name": "weird", "type": "symbol"}),
            PeerPropertyDescriptor.model_validate({
                "name": "nested", "type": "object",
                "properties": [{"name": "run", "type": "function"}],
            }),
        ]

        mirror = materialize(descriptors, OperationDispatcher(None), False)

        assert isinstance(mirror.nested.run, RemoteFunction)
        assert mirror.nested.run.path == "nested.run"
        assert sorted(mirror) == ["nested", "weird"]

    @pytest.mark.p1
    def test_members_named_like_internals(self):
        """Test peer members named like the mirror's own fields are reachable."""
        names = ["_path", "_members", "_dispatcher", "_allow_callback_arguments", "_resolve"]
        descriptors = [
            PeerPropertyDescriptor.model_validate({
                "name": "api", "type": "object",
                "properties": [{"name": name, "type": "function"} for name in names],
            }),
        ]

        mirror = materialize(descriptors, OperationDispatcher(None), False)

        for name in names:
            member = getattr(mirror.api, name)
            assert isinstance(member, RemoteFunction)
            assert member.path == f"api.{name}"
        assert sorted(mirror.api) == sorted(names)
        assert mirror.api["_path"].path == "api._path"


class TestMirrorOperations:
    """Tests for operations issued through the mirror."""

    @pytest.mark.p0
    def test_function_call(self, dispatcher, peer_namespace):
        """Test calling a mirrored function dispatches a call."""
        async def scenario():
            mirror = await build_mirror(dispatcher, True)
            return await mirror.tabs.query({"url": "x"})

        assert asyncio.run(scenario()) == [{"id": 1, "title": "Home"}]
        assert peer_namespace["calls"] == [("query", {"url": "x"})]

    @pytest.mark.p0
    def test_value_read_is_never_cached(self, dispatcher, peer_namespace):
        """Test each read of a value member fetches the current value."""
        async def scenario():
            mirror = await build_mirror(dispatcher, True)
            first = await mirror.tabs.count
            peer_namespace["tabs"]["count"] = 4
            second = await mirror.tabs.count
            return first, second

        assert asyncio.run(scenario()) == (3, 4)

    @pytest.mark.p1
    def test_value_read_by_item(self, dispatcher):
        """Test item access reads a value like attribute access."""
        async def scenario():
            mirror = await build_mirror(dispatcher, True)
            return await mirror.settings["theme"]

        assert asyncio.run(scenario()) == "dark"

    @pytest.mark.p1
    def test_mirrored_callback(self, dispatcher, loopback_channel, settle):
        """Test mirrored functions accept callbacks when allowed."""
        received = []

        async def scenario():
            mirror = await build_mirror(dispatcher, True)
            await mirror.events.subscribe(lambda event, n: received.append(event), "ready")
            await settle(loopback_channel)

        asyncio.run(scenario())

        assert received == ["ready"]
