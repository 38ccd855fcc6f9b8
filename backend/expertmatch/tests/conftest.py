"""Test helpers and fixtures for FastAPI client setup and sample expert data."""

from __future__ import annotations

import importlib
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[3]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from backend.expertmatch.core import config as config_module
from backend.expertmatch.models.dto import ExpertRecord, WorkExperienceRecord
from backend.expertmatch.store.experts import InMemoryExpertRepository

SAMPLE_EXPERTS = [
    {"id": "E1", "name": "Alice Smith", "email": "alice@example.com", "seniority": "Senior"},
    {"id": "E2", "name": "Bob Stone", "email": "bob@example.com", "seniority": "Middle"},
    {"id": "E3", "name": "Carol White", "email": "carol@example.com", "seniority": None},
]

SAMPLE_WORK = [
    {
        "employee_id": "E1",
        "project_id": "P1",
        "project_name": "Payments Platform",
        "project_type": "Development",
        "role": "Tech Lead",
        "technologies": ["Java", "Spring"],
        "industry": "Finance",
        "customer_id": "C1",
        "customer_name": "Acme Bank",
        "summary": "Card payment processing backend",
    },
    {
        "employee_id": "E1",
        "project_id": "P2",
        "project_name": "Cloud Migration",
        "project_type": "Migration",
        "role": "Architect",
        "technologies": ["AWS", "Terraform"],
        "industry": "Finance",
        "customer_id": "C1",
        "customer_name": "Acme Bank",
        "summary": "Moved core services to AWS",
    },
    {
        "employee_id": "E2",
        "project_id": "P1",
        "project_name": "Payments Platform",
        "project_type": "Development",
        "role": "Developer",
        "technologies": ["Java"],
        "industry": "Finance",
        "customer_id": "C1",
        "customer_name": "Acme Bank",
        "summary": "Settlement batch jobs",
    },
    {
        "employee_id": "E3",
        "project_id": "P3",
        "project_name": "Retail Analytics",
        "project_type": "Data",
        "role": "Data Engineer",
        "technologies": ["AWS", "Python"],
        "industry": "Retail",
        "customer_id": "C2",
        "customer_name": "ShopCo",
        "summary": "Sales dashboards on AWS",
    },
]


@pytest.fixture
def expert_repository() -> InMemoryExpertRepository:
    return InMemoryExpertRepository(
        experts=[ExpertRecord.model_validate(item) for item in SAMPLE_EXPERTS],
        work_experience=[WorkExperienceRecord.model_validate(item) for item in SAMPLE_WORK],
    )


@pytest.fixture
def seed_file(tmp_path) -> Path:
    path = tmp_path / "seed.json"
    path.write_text(json.dumps({"experts": SAMPLE_EXPERTS, "work_experience": SAMPLE_WORK}), encoding="utf-8")
    return path


@pytest.fixture
def make_client(monkeypatch, tmp_path) -> Callable[[Dict[str, Any]], TestClient]:
    """Return a factory that builds a TestClient with env overrides."""

    def factory(env: Dict[str, Any] | None = None) -> TestClient:
        overrides = {
            "DATABASE_URL": None,
            "EMBED_PROVIDER": "stub",
            "RERANK_PROVIDER": "none",
            "CHROMA_DIR": tmp_path / "chroma",
            "LOG_DIR": tmp_path / "logs",
            "ADMIN_API_SECRET": None,
            "SEED_PATH": None,
        }
        overrides.update(env or {})
        for key, value in overrides.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

        # ensure settings pick up the latest environment
        config_module.reload_settings()

        import backend.expertmatch.main as main
        importlib.reload(main)
        return TestClient(main.app)

    return factory
