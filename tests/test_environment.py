from __future__ import annotations

import json
import os

import pytest

from conftest import make_env
from relaymatrix.environment import EnvironmentProvider, StaticBackend, make_backend
from relaymatrix.errors import EnvironmentUnavailable, RunCancelled
from relaymatrix.model import EnvironmentRef
from relaymatrix.process import CancelToken


def _exe(path, body="#!/bin/sh\necho ok\n"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body)
    path.chmod(0o755)
    return path


@pytest.fixture
def index_file(tmp_path):
    _exe(tmp_path / "chains" / "gaia6" / "bin" / "gaiad")
    _exe(tmp_path / "chains" / "gaia7" / "bin" / "gaiad", "#!/bin/sh\necho v7\n")
    _exe(tmp_path / "tools" / "python" / "bin" / "python3")
    (tmp_path / "chains" / "broken").mkdir(parents=True)

    index = {
        "gaia6": {"version": "6.0.4", "path": "chains/gaia6", "executables": {"gaiad": "bin/gaiad"}},
        "gaia7": {"version": "7.0.1", "path": "chains/gaia7", "executables": {"gaiad": "bin/gaiad"}},
        "python": {"version": "3.11", "path": "tools/python", "executables": {"python3": "bin/python3"}},
        "broken": {"version": "0", "path": "chains/broken", "executables": {"gaiad": "bin/gaiad"}},
    }
    p = tmp_path / "packages.json"
    p.write_text(json.dumps(index))
    return p


@pytest.fixture
def static_provider(index_file, tmp_path):
    return EnvironmentProvider(StaticBackend.from_file(index_file), work_root=tmp_path / "work")


def test_static_backend_resolves_relative_paths(index_file, tmp_path):
    pkg = StaticBackend.from_file(index_file).resolve("gaia6")

    assert pkg.version == "6.0.4"
    assert dict(pkg.executables)["gaiad"] == str((tmp_path / "chains" / "gaia6" / "bin" / "gaiad").resolve())
    assert len(pkg.content) == 64


def test_unknown_package_is_unavailable(index_file):
    with pytest.raises(EnvironmentUnavailable) as ei:
        StaticBackend.from_file(index_file).resolve("gaia99")
    assert ei.value.package == "gaia99"


def test_missing_executable_is_unavailable(index_file):
    with pytest.raises(EnvironmentUnavailable, match="missing or not executable"):
        StaticBackend.from_file(index_file).resolve("broken")


def test_digest_is_stable_and_content_sensitive(index_file, tmp_path):
    ref = EnvironmentRef("gaia6", ("python",))
    d1, _ = EnvironmentProvider(StaticBackend.from_file(index_file)).resolve(ref)
    d2, _ = EnvironmentProvider(StaticBackend.from_file(index_file)).resolve(ref)
    assert d1 == d2

    other, _ = EnvironmentProvider(StaticBackend.from_file(index_file)).resolve(EnvironmentRef("gaia7", ("python",)))
    assert other != d1

    _exe(tmp_path / "chains" / "gaia6" / "bin" / "gaiad", "#!/bin/sh\necho patched\n")
    d3, _ = EnvironmentProvider(StaticBackend.from_file(index_file)).resolve(ref)
    assert d3 != d1


def test_acquire_exposes_executables_and_private_workdir(static_provider):
    ref = EnvironmentRef("gaia6", ("python",))
    with static_provider.acquire(ref) as env:
        assert set(env.executables) == {"gaiad", "python3"}
        assert env.workdir.is_dir()
        assert (env.workdir / "tmp").is_dir()

        penv = env.process_env({"CHAIN_COMMAND_PATH": "gaiad"})
        assert penv["PATH"].split(os.pathsep)[0] == str(env.executables["gaiad"].parent)
        assert penv["HOME"] == str(env.workdir)
        assert penv["CHAIN_COMMAND_PATH"] == "gaiad"
        assert penv["RELAYMATRIX_ENVIRONMENT_DIGEST"] == env.digest

        assert static_provider.pins() == {env.digest: 1}
        workdir = env.workdir

    assert not workdir.exists()
    assert static_provider.active() == []
    assert static_provider.pins() == {}


def test_private_home_keeps_cargo_and_rustup_homes(tmp_path, monkeypatch):
    real_home = tmp_path / "home"
    monkeypatch.setenv("HOME", str(real_home))
    monkeypatch.delenv("CARGO_HOME", raising=False)
    monkeypatch.delenv("RUSTUP_HOME", raising=False)
    env = make_env(tmp_path / "lease")

    penv = env.process_env({})
    assert penv["HOME"] == str(tmp_path / "lease")
    assert penv["CARGO_HOME"] == str(real_home / ".cargo")
    assert penv["RUSTUP_HOME"] == str(real_home / ".rustup")

    monkeypatch.setenv("CARGO_HOME", "/opt/cargo")
    monkeypatch.setenv("RUSTUP_HOME", "/opt/rustup")
    penv = env.process_env({})
    assert penv["CARGO_HOME"] == "/opt/cargo"
    assert penv["RUSTUP_HOME"] == "/opt/rustup"


def test_same_ref_gets_distinct_workdirs(static_provider):
    ref = EnvironmentRef("gaia6")
    with static_provider.acquire(ref) as a, static_provider.acquire(ref) as b:
        assert a.digest == b.digest
        assert a.workdir != b.workdir
        assert a.lease != b.lease
        assert static_provider.pins() == {a.digest: 2}
    assert static_provider.pins() == {}


def test_release_on_exception(static_provider):
    with pytest.raises(RuntimeError):
        with static_provider.acquire(EnvironmentRef("gaia6")) as env:
            workdir = env.workdir
            raise RuntimeError("suite crashed")

    assert not workdir.exists()
    assert static_provider.active() == []
    assert static_provider.pins() == {}


def test_release_is_idempotent(static_provider):
    with static_provider.acquire(EnvironmentRef("gaia6")) as env:
        static_provider.release(env)
        assert static_provider.active() == []
    assert static_provider.pins() == {}


def test_unavailable_toolchain_names_full_ref(static_provider):
    with pytest.raises(EnvironmentUnavailable) as ei:
        with static_provider.acquire(EnvironmentRef("gaia6", ("apalache",))):
            pass
    assert ei.value.ref == "gaia6+apalache"
    assert ei.value.package == "apalache"
    assert static_provider.active() == []


def test_cancelled_token_stops_acquisition(static_provider):
    token = CancelToken()
    token.cancel("stop")
    with pytest.raises(RunCancelled):
        with static_provider.acquire(EnvironmentRef("gaia6"), token):
            pass


def test_resolution_is_memoised(provider, backend):
    ref = EnvironmentRef("gaia6", ("python",))
    with provider.acquire(ref):
        pass
    with provider.acquire(ref):
        pass
    assert backend.calls == ["gaia6", "python"]


def test_make_backend(index_file):
    assert isinstance(make_backend("static", index=index_file), StaticBackend)
    assert make_backend("nix", flake="github:informalsystems/ibc-rs").flake == "github:informalsystems/ibc-rs"
    with pytest.raises(ValueError):
        make_backend("docker")
    with pytest.raises(FileNotFoundError):
        make_backend("static", index=index_file.parent / "nope.json")
