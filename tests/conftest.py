"""
Shared fixtures for ClipMesh tests.
"""
import pytest
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import clipmesh


class MemoryStore:
    """In-memory stand-in for the OS clipboard."""

    def __init__(self, content="", fail_get=False, fail_set=False):
        self.content = content
        self.fail_get = fail_get
        self.fail_set = fail_set
        self.writes = []

    def get(self):
        if self.fail_get:
            raise clipmesh.StoreError("clipboard unavailable")
        return self.content

    def set(self, text):
        if self.fail_set:
            raise clipmesh.StoreError("clipboard unavailable")
        self.content = text
        self.writes.append(text)


class Node:
    """One ClipMesh node wired up without sockets."""

    def __init__(self, url, transport, peers=(), initial=""):
        self.url = url
        self.store = MemoryStore(initial)
        self.state = clipmesh.ReplicatedValue.from_store(self.store)
        self.app = clipmesh.create_app(self.state)
        self.app.config['TESTING'] = True
        self.client = self.app.test_client()
        self.engine = clipmesh.SyncEngine(self.state, peers, transport, interval=0.01)

    def fetch(self):
        return self.client.get('/clipboard').get_data(as_text=True)

    def replace(self, text):
        return self.client.post('/clipboard', data=text.encode('utf-8'))


class AppTransport:
    """Routes peer RPCs to other nodes' Flask test clients.

    Peers that were never registered behave like unreachable hosts.
    """

    def __init__(self):
        self.nodes = {}
        self.calls = []

    def _client(self, peer):
        if peer not in self.nodes:
            raise clipmesh.TransportError(peer, "ConnectionError: connection refused")
        return self.nodes[peer].client

    def fetch(self, peer):
        self.calls.append(("fetch", peer))
        resp = self._client(peer).get('/clipboard')
        if resp.status_code != 200:
            raise clipmesh.TransportError(peer, f"HTTP {resp.status_code}")
        return resp.get_data(as_text=True)

    def push(self, peer, text):
        self.calls.append(("push", peer))
        resp = self._client(peer).post('/clipboard', data=text.encode('utf-8'))
        if resp.status_code != 200:
            raise clipmesh.TransportError(peer, f"HTTP {resp.status_code}")


@pytest.fixture
def mock_clipboard(monkeypatch):
    """Mock clipboard for testing without affecting real clipboard."""
    clipboard_content = [""]

    def mock_get():
        return clipboard_content[0]

    def mock_set(text):
        clipboard_content[0] = text
        return True

    monkeypatch.setattr(clipmesh, 'clipboard_get', mock_get)
    monkeypatch.setattr(clipmesh, 'clipboard_set', mock_set)

    return clipboard_content


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def failing_store():
    return MemoryStore(fail_set=True)


@pytest.fixture
def state(store):
    return clipmesh.ReplicatedValue.from_store(store)


@pytest.fixture
def server_client(state):
    """Create a test client for a node with no peers."""
    app = clipmesh.create_app(state)
    app.config['TESTING'] = True
    return app.test_client()


@pytest.fixture
def transport():
    return AppTransport()


@pytest.fixture
def make_node(transport):
    """Factory for nodes registered on the shared in-process transport."""

    def _make(url, peers=(), initial=""):
        node = Node(url, transport, peers, initial)
        transport.nodes[url] = node
        return node

    return _make


@pytest.fixture
def test_config(tmp_path):
    """Return a function that writes a dict as config.json and returns its path."""
    import json

    def _write(config):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps(config))
        return config_file

    return _write
