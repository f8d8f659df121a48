import asyncio

import pytest

from omnidev_mcp.watcher import CapabilityWatcher, default_watch_paths


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_default_watch_paths(tmp_path):
    paths = default_watch_paths(tmp_path)
    assert paths == [
        tmp_path / ".omni" / "config.toml",
        tmp_path / ".omni" / "config.local.toml",
        tmp_path / ".omni" / "capabilities",
    ]


@pytest.mark.asyncio
async def test_burst_of_changes_triggers_single_reload(tmp_path):
    capabilities = tmp_path / ".omni" / "capabilities"
    capabilities.mkdir(parents=True)
    reloads = []

    async def on_reload():
        reloads.append(True)

    watcher = CapabilityWatcher(default_watch_paths(tmp_path), on_reload, debounce=0.1)
    watcher.start()
    try:
        await asyncio.sleep(0.05)
        (capabilities / "search").mkdir()
        (capabilities / "search" / "capability.toml").write_text('[capability]\nid = "a"\n')
        await asyncio.sleep(0.03)
        (capabilities / "search" / "capability.toml").write_text('[capability]\nid = "ab"\n')

        await _wait_for(lambda: reloads)
        await asyncio.sleep(0.2)
        assert len(reloads) == 1
    finally:
        await watcher.stop()
    assert not watcher.running


@pytest.mark.asyncio
async def test_creating_missing_config_triggers_reload(tmp_path):
    (tmp_path / ".omni").mkdir()
    reloaded = asyncio.Event()

    async def on_reload():
        reloaded.set()

    watcher = CapabilityWatcher(default_watch_paths(tmp_path), on_reload, debounce=0.02)
    watcher.start()
    try:
        await asyncio.sleep(0.05)
        (tmp_path / ".omni" / "config.local.toml").write_text("[profiles]\n")
        await asyncio.wait_for(reloaded.wait(), timeout=2)
    finally:
        await watcher.stop()


@pytest.mark.asyncio
async def test_reload_errors_do_not_stop_watching(tmp_path):
    config = tmp_path / "config.toml"
    config.write_text("a = 1\n")
    calls = []

    async def on_reload():
        calls.append(True)
        if len(calls) == 1:
            raise RuntimeError("bad config")

    watcher = CapabilityWatcher([config], on_reload, debounce=0.02)
    watcher.start()
    try:
        await asyncio.sleep(0.05)
        config.write_text("a = 22\n")
        await _wait_for(lambda: len(calls) == 1)
        config.write_text("a = 333\n")
        await _wait_for(lambda: len(calls) == 2)
        assert watcher.running
    finally:
        await watcher.stop()


@pytest.mark.asyncio
async def test_unrelated_files_next_to_config_are_ignored(tmp_path):
    omni = tmp_path / ".omni"
    omni.mkdir()
    reloads = []

    async def on_reload():
        reloads.append(True)

    watcher = CapabilityWatcher(default_watch_paths(tmp_path), on_reload, debounce=0.02)
    watcher.start()
    try:
        assert watcher.running
        await asyncio.sleep(0.05)
        (omni / "notes.txt").write_text("scratch\n")
        await asyncio.sleep(0.3)
        assert reloads == []
    finally:
        await watcher.stop()
    assert not watcher.running


@pytest.mark.asyncio
async def test_capabilities_directory_created_later_is_watched(tmp_path):
    (tmp_path / ".omni").mkdir()
    reloads = []

    async def on_reload():
        reloads.append(True)

    watcher = CapabilityWatcher(default_watch_paths(tmp_path), on_reload, debounce=0.05)
    watcher.start()
    try:
        await asyncio.sleep(0.05)
        capabilities = tmp_path / ".omni" / "capabilities"
        capabilities.mkdir()
        await _wait_for(lambda: len(reloads) == 1)
        await asyncio.sleep(0.1)

        (capabilities / "capability.toml").write_text('[capability]\nid = "late"\n')
        await _wait_for(lambda: len(reloads) == 2)
    finally:
        await watcher.stop()
