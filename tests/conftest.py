from __future__ import annotations

import pytest

from videotext_pipeline.config import get_settings


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("vt_test")
    (root / "Output").mkdir(parents=True, exist_ok=True)
    (root / "logs").mkdir(parents=True, exist_ok=True)
    (root / "_state").mkdir(parents=True, exist_ok=True)
    (root / "uploads").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("VIDEOTEXT_OUTPUT_DIR", str(root / "Output"))
    monkeypatch.setenv("VIDEOTEXT_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("VIDEOTEXT_STATE_DIR", str(root / "_state"))
    monkeypatch.setenv("VIDEOTEXT_UPLOADS_DIR", str(root / "uploads"))
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.delenv("JOB_TOKEN_SECRET", raising=False)
    monkeypatch.delenv("STRICT_SECRETS", raising=False)
    monkeypatch.delenv("ENV", raising=False)
    monkeypatch.delenv("APP_ENV", raising=False)
    get_settings.cache_clear()
