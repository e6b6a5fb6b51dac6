import tempfile
from pathlib import Path

from zenbot_core.infrastructure.storage.json_store import JsonSessionStore


def test_json_store_save_load_clear():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonSessionStore(root=root)
        assert store.load("zenbot") is None
        blob = {"version": 1, "api_key": "k", "messages": [{"role": "user", "content": "你好"}], "custom_models": []}
        store.save("zenbot", blob)
        assert store.load("zenbot") == blob
        store.clear("zenbot")
        assert store.load("zenbot") is None
        # 清除不存在的 key 不报错
        store.clear("zenbot")


def test_json_store_corrupt_file_loads_as_none():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonSessionStore(root=root)
        store.save("zenbot", {"version": 1})
        path = root / "sessions" / "zenbot.json"
        assert path.exists()
        path.write_text("{not json", encoding="utf-8")
        assert store.load("zenbot") is None


def test_json_store_sanitizes_keys():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonSessionStore(root=root)
        store.save("../evil/key", {"version": 1})
        files = [p.name for p in (root / "sessions").iterdir()]
        assert files == [".._evil_key.json"]
        assert store.load("../evil/key") == {"version": 1}
