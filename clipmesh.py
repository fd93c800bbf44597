#!/usr/bin/env python3
"""
ClipMesh - Peer-to-peer clipboard replication over HTTP

Every node serves GET/POST /clipboard and periodically pushes local changes
to, and pulls the current value from, a fixed list of peers.
"""

import argparse
import json
import os
import subprocess
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

# ============================================================
# LINUX: Prevent ghost windows from clipboard access
# ============================================================
if sys.platform.startswith('linux'):
    os.environ.setdefault('PYPERCLIP_BACKEND', 'xclip')
    os.environ.setdefault('GDK_BACKEND', 'x11')
    os.environ.setdefault('NO_AT_BRIDGE', '1')
    os.environ.setdefault('SDL_VIDEODRIVER', 'dummy')

import pyperclip
import requests
from flask import Flask, request

# ============================================================
# CONFIGURATION
# ============================================================

SCRIPT_DIR = Path(__file__).parent
CONFIG_FILE = SCRIPT_DIR / "config.json"
CLIPBOARD_PATH = "/clipboard"

DEFAULT_CONFIG = {
    "sync_interval": 5.0,    # Seconds between push/pull rounds
    "timeout": 3.0,          # Seconds per peer request
    "watch_clipboard": False,
    "watch_interval": 0.8    # Seconds between OS clipboard checks
}
REQUIRED_KEYS = ("servers", "port")


class ClipMeshError(Exception):
    """Base class for ClipMesh errors."""


class ConfigError(ClipMeshError):
    """Configuration file is missing or invalid."""


class StoreError(ClipMeshError):
    """The local clipboard could not be read or written."""


class TransportError(ClipMeshError):
    """A peer could not be reached or answered badly."""

    def __init__(self, peer, reason):
        super().__init__(f"{peer}: {reason}")
        self.peer = peer
        self.reason = reason


@dataclass(frozen=True)
class Config:
    peers: tuple
    host: str
    port: int
    sync_interval: float = DEFAULT_CONFIG["sync_interval"]
    timeout: float = DEFAULT_CONFIG["timeout"]
    watch_clipboard: bool = DEFAULT_CONFIG["watch_clipboard"]
    watch_interval: float = DEFAULT_CONFIG["watch_interval"]


def parse_listen_address(address):
    """Split ':8080' or 'host:8080' into (host, port). Empty host binds all interfaces."""
    if not isinstance(address, str) or ':' not in address:
        raise ConfigError(f"Invalid listen address: {address!r}")
    host, _, port = address.rpartition(':')
    try:
        port = int(port)
    except ValueError:
        raise ConfigError(f"Invalid port in listen address: {address!r}") from None
    if not 0 < port <= 65535:
        raise ConfigError(f"Port out of range: {port}")
    return host or "0.0.0.0", port


def normalize_peer(peer):
    if not isinstance(peer, str) or not peer.strip():
        raise ConfigError(f"Invalid peer address: {peer!r}")
    peer = peer.strip().rstrip('/')
    if "://" not in peer:
        peer = f"http://{peer}"
    return peer


def _positive_number(raw, key):
    value = raw[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"'{key}' must be a positive number, got {value!r}")
    return float(value)


def load_config(path=CONFIG_FILE):
    """Load and validate the config file. Any problem raises ConfigError."""
    path = Path(path)
    try:
        with open(path, 'r') as f:
            user_config = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}") from None
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read config {path}: {e}") from e

    if not isinstance(user_config, dict):
        raise ConfigError("Config must be a JSON object")
    missing = [key for key in REQUIRED_KEYS if key not in user_config]
    if missing:
        raise ConfigError(f"Config is missing required keys: {', '.join(missing)}")

    raw = {**DEFAULT_CONFIG, **user_config}
    servers = raw["servers"]
    if not isinstance(servers, list):
        raise ConfigError("'servers' must be a list of peer URLs")
    if not isinstance(raw["watch_clipboard"], bool):
        raise ConfigError("'watch_clipboard' must be true or false")

    host, port = parse_listen_address(raw["port"])
    return Config(
        peers=tuple(normalize_peer(peer) for peer in servers),
        host=host,
        port=port,
        sync_interval=_positive_number(raw, "sync_interval"),
        timeout=_positive_number(raw, "timeout"),
        watch_clipboard=raw["watch_clipboard"],
        watch_interval=_positive_number(raw, "watch_interval"),
    )

# ============================================================
# CLIPBOARD ABSTRACTION (Linux-safe)
# ============================================================

LINUX_PASTE_COMMANDS = (
    ['xclip', '-selection', 'clipboard', '-o'],
    ['wl-paste', '--no-newline'],
)
LINUX_COPY_COMMANDS = (
    ['xclip', '-selection', 'clipboard'],
    ['wl-copy'],
)


def _linux_get_clipboard():
    """Get clipboard on Linux using xclip or wl-paste directly (less intrusive than pyperclip)."""
    for command in LINUX_PASTE_COMMANDS:
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=1)
        except (OSError, subprocess.TimeoutExpired):
            continue
        if result.returncode == 0:
            return result.stdout
    return pyperclip.paste()


def _linux_set_clipboard(text):
    """Set clipboard on Linux using xclip or wl-copy directly."""
    for command in LINUX_COPY_COMMANDS:
        try:
            process = subprocess.Popen(command, stdin=subprocess.PIPE)
        except OSError:
            continue
        try:
            process.communicate(input=text.encode('utf-8'), timeout=1)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            continue
        if process.returncode == 0:
            return True
    pyperclip.copy(text)
    return True


def clipboard_get():
    """Cross-platform clipboard get."""
    try:
        if sys.platform.startswith('linux'):
            return _linux_get_clipboard()
        return pyperclip.paste()
    except pyperclip.PyperclipException as e:
        raise StoreError(f"Failed to read clipboard: {e}") from e


def clipboard_set(text):
    """Cross-platform clipboard set."""
    try:
        if sys.platform.startswith('linux'):
            return _linux_set_clipboard(text)
        pyperclip.copy(text)
        return True
    except pyperclip.PyperclipException as e:
        raise StoreError(f"Failed to write clipboard: {e}") from e


class SystemClipboard:
    """Local store backed by the OS clipboard."""

    def get(self):
        return clipboard_get()

    def set(self, text):
        clipboard_set(text)

# ============================================================
# LOGGING
# ============================================================

def log(msg):
    ts = datetime.now().strftime("%H:%M:%S")
    print(f"[{ts}] {msg}", flush=True)


def _preview(text):
    return text[:40].replace(chr(10), ' ')

# ============================================================
# REPLICATED VALUE
# ============================================================

class RWLock:
    """Many concurrent readers or a single writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ReplicatedValue:
    """The clipboard text shared by the HTTP handlers and the sync engine.

    ``value`` is what this node serves; ``last_propagated`` is the value last
    pushed to peers. Both are only touched under ``_lock``. Writes update the
    in-memory value first and then mirror it into the local store, so a store
    failure never loses the value.
    """

    def __init__(self, store, initial=""):
        self.store = store
        self._lock = RWLock()
        self._value = initial
        self._last_propagated = initial

    @classmethod
    def from_store(cls, store):
        """Seed from the store's current content. StoreError propagates."""
        return cls(store, store.get())

    def read(self):
        with self._lock.read():
            return self._value

    def snapshot(self):
        """Return (value, last_propagated) from a single lock acquisition."""
        with self._lock.read():
            return self._value, self._last_propagated

    def write(self, text):
        with self._lock.write():
            self._value = text
            self.store.set(text)

    def mark_propagated(self, text):
        with self._lock.write():
            self._last_propagated = text

    def adopt_local(self, text):
        """Take a copy made on this machine unless the store has moved on.

        The store is re-read under the write lock; if a merge rewrote it since
        ``text`` was read, the merge wins and nothing changes.
        """
        with self._lock.write():
            if text == self._value or self.store.get() != text:
                return False
            self._value = text
            return True

    def merge(self, text):
        """Adopt a peer's value if it differs from ours.

        Returns True when the value changed. If mirroring to the store fails
        the merge still stands and StoreError is raised.
        """
        with self._lock.write():
            if text == self._value:
                return False
            self._value = text
            self._last_propagated = text
            self.store.set(text)
            return True

# ============================================================
# PEER TRANSPORT
# ============================================================

class HttpTransport:
    """Talks to a peer's /clipboard endpoint."""

    def __init__(self, timeout=DEFAULT_CONFIG["timeout"], session=None):
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def url_for(peer):
        return f"{peer}{CLIPBOARD_PATH}"

    def fetch(self, peer):
        try:
            resp = self.session.get(self.url_for(peer), timeout=self.timeout)
            resp.raise_for_status()
            return resp.content.decode('utf-8')
        except requests.RequestException as e:
            raise TransportError(peer, f"{type(e).__name__}: {e}") from e
        except UnicodeDecodeError as e:
            raise TransportError(peer, "response is not valid UTF-8") from e

    def push(self, peer, text):
        try:
            resp = self.session.post(
                self.url_for(peer),
                data=text.encode('utf-8'),
                headers={"Content-Type": "text/plain; charset=utf-8"},
                timeout=self.timeout
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(peer, f"{type(e).__name__}: {e}") from e

# ============================================================
# SYNC ENGINE
# ============================================================

class SyncEngine:
    """Push local changes to every peer, then pull and merge theirs.

    Peers are visited in configuration order. A failing peer is logged and
    skipped. In the pull phase each peer is compared against the value as it
    stands at that moment, so the last peer in order whose value differs is
    the one that sticks.
    """

    def __init__(self, state, peers, transport, interval=DEFAULT_CONFIG["sync_interval"]):
        self.state = state
        self.peers = tuple(peers)
        self.transport = transport
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    def push_changes(self):
        """Send the value to all peers if it changed since the last push."""
        value, last_propagated = self.state.snapshot()
        if value == last_propagated:
            return False

        for peer in self.peers:
            try:
                self.transport.push(peer, value)
            except TransportError as e:
                log(f"⚠️ Failed to sync with {peer}: {e.reason}")
                continue
            log(f"📤 SENT to {peer}: {_preview(value)}...")

        self.state.mark_propagated(value)
        return True

    def pull_changes(self):
        """Fetch each peer's value and merge it when it differs. Returns merge count."""
        merged = 0
        for peer in self.peers:
            try:
                remote = self.transport.fetch(peer)
            except TransportError as e:
                log(f"⚠️ Failed to fetch clipboard from {peer}: {e.reason}")
                continue

            try:
                changed = self.state.merge(remote)
            except StoreError as e:
                log(f"⚠️ Merged value from {peer} but local clipboard write failed: {e}")
                changed = True

            if changed:
                merged += 1
                log(f"📥 RECV from {peer}: {_preview(remote)}...")
        return merged

    def run_once(self):
        self.push_changes()
        self.pull_changes()

    def run(self):
        log(f"🔄 Sync active with {len(self.peers)} peer(s), every {self.interval}s")
        while True:
            self.run_once()
            if self._stop.wait(self.interval):
                break

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="clipmesh-sync", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

# ============================================================
# CLIPBOARD WATCHER
# ============================================================

class ClipboardWatcher:
    """Feed text copied on this machine into the replicated value."""

    def __init__(self, state, interval=DEFAULT_CONFIG["watch_interval"]):
        self.state = state
        self.interval = interval
        self._last_local = state.read()
        self._stop = threading.Event()
        self._thread = None

    def check_once(self):
        """Return True when a new local copy was taken into the replicated value."""
        try:
            current = self.state.store.get()
        except StoreError as e:
            log(f"⚠️ Monitor error: {e}")
            return False

        if current == self._last_local:
            return False
        self._last_local = current

        try:
            adopted = self.state.adopt_local(current)
        except StoreError as e:
            log(f"⚠️ Monitor error: {e}")
            return False
        if not adopted:
            return False
        log(f"📋 LOCAL copy: {_preview(current)}...")
        return True

    def run(self):
        log("🔄 Clipboard monitor active")
        while True:
            self.check_once()
            if self._stop.wait(self.interval):
                break

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="clipmesh-watch", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

# ============================================================
# SERVER
# ============================================================

def create_app(state):
    """Build the Flask app serving GET/POST /clipboard for ``state``."""
    app = Flask(__name__)

    @app.route(CLIPBOARD_PATH, methods=['GET', 'POST'], provide_automatic_options=False)
    def clipboard():
        if request.method == 'HEAD':
            return "Method not allowed", 405
        if request.method == 'GET':
            return state.read(), 200, {"Content-Type": "text/plain; charset=utf-8"}

        try:
            incoming = request.get_data().decode('utf-8')
        except UnicodeDecodeError:
            return "Failed to read request body", 400

        try:
            state.write(incoming)
        except StoreError as e:
            log(f"⚠️ Clipboard updated in memory only: {e}")
            return "Failed to update local clipboard", 500
        return "Clipboard updated", 200

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return "Method not allowed", 405

    return app

# ============================================================
# MAIN
# ============================================================

def _positive_float(value):
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive number, got {value}")
    return number


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="ClipMesh - Peer-to-peer clipboard replication",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Example config.json:
  {"servers": ["http://192.168.1.10:8080"], "port": ":8080"}
        """
    )
    parser.add_argument('--config', '-c', type=Path, default=CONFIG_FILE, help='Path to config.json')
    parser.add_argument('--interval', '-i', type=_positive_float, help='Seconds between sync rounds')
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        log(f"❌ Failed to load config: {e}")
        return 1
    interval = args.interval or config.sync_interval

    try:
        state = ReplicatedValue.from_store(SystemClipboard())
    except StoreError as e:
        log(f"❌ Failed to read initial clipboard content: {e}")
        return 1

    print("\n" + "=" * 50)
    print("   CLIPMESH NODE")
    print("=" * 50)
    log(f"🚀 Listening on {config.host}:{config.port}")
    for peer in config.peers:
        log(f"🔗 Peer: {peer}")

    engine = SyncEngine(state, config.peers, HttpTransport(config.timeout), interval)
    engine.start()
    if config.watch_clipboard:
        ClipboardWatcher(state, config.watch_interval).start()

    import logging
    logging.getLogger('werkzeug').setLevel(logging.WARNING)

    print("=" * 50 + "\n")
    app = create_app(state)
    app.run(host=config.host, port=config.port, debug=False, threaded=True)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n")
        log("👋 ClipMesh stopped")
        sys.exit(0)
