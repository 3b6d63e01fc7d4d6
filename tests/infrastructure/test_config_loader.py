"""Tests for settings loading and validation."""

import json

import pytest

from concord.domain.exceptions import ConfigurationError
from concord.domain.models import AgentRole
from concord.domain.tools import ToolCategory
from concord.infrastructure.config_loader import load_settings, settings_from_dict

VALID = {
    "orchestrator_id": "lead",
    "agents": [
        {"agent_id": "lead", "role": "orchestrator"},
        {
            "agent_id": "performance",
            "domain_weights": {"performance": 1.0},
            "authority_score": 1.2,
        },
    ],
    "tools": [
        {"tool_id": "lighthouse", "category": "exclusive"},
        {"tool_id": "browsers", "category": "pool", "concurrent_limit": 4, "buffer_s": 10},
    ],
    "handoff": {"ack_timeout_s": 2.5, "max_attempts": 5},
    "tool_arbiter": {"aging_interval_s": 15},
    "decision": {"default_deadline_s": 120},
    "maintenance": {"handoff_retention_s": 600},
}


class TestSettingsFromDict:
    """Tests for settings_from_dict()."""

    def test_valid_document(self) -> None:
        settings = settings_from_dict(VALID)

        assert [a.agent_id for a in settings.agents] == ["lead", "performance"]
        assert settings.agents[0].role is AgentRole.ORCHESTRATOR
        assert settings.agents[1].authority_score == 1.2
        assert settings.tool_catalog[1].category is ToolCategory.POOL
        assert settings.tool_catalog[1].concurrent_limit == 4
        assert settings.tool_catalog[1].buffer_s == 10
        assert settings.handoff.ack_timeout_s == 2.5
        assert settings.handoff.max_attempts == 5
        assert settings.handoff.base_delay_s == 0.1
        assert settings.tools.aging_interval_s == 15
        assert settings.decision.default_deadline_s == 120
        assert settings.maintenance.handoff_retention_s == 600
        assert settings.orchestrator_id == "lead"

    def test_empty_document_uses_defaults(self) -> None:
        settings = settings_from_dict({})

        assert settings.agents == ()
        assert settings.handoff.max_attempts == 3
        assert settings.decision.expert_threshold == 0.8
        assert settings.decision.default_deadline_s == 3600.0
        assert settings.maintenance.handoff_retention_s == 24 * 3600.0

    @pytest.mark.parametrize(
        "document,location",
        [
            ({"handoff": {"max_attempts": 0}}, "handoff/max_attempts"),
            ({"agents": [{"name": "no id"}]}, "agents/0"),
            ({"tools": [{"tool_id": "x", "category": "borrowed"}]}, "tools/0/category"),
            ({"unknown": True}, "<root>"),
        ],
    )
    def test_schema_violations(self, document, location) -> None:  # noqa: ANN001
        with pytest.raises(ConfigurationError, match=location):
            settings_from_dict(document)

    def test_exclusive_tool_limit(self) -> None:
        document = {"tools": [{"tool_id": "x", "category": "exclusive", "concurrent_limit": 2}]}

        with pytest.raises(ConfigurationError, match="concurrent_limit 1"):
            settings_from_dict(document)

    def test_duplicate_agents(self) -> None:
        document = {"agents": [{"agent_id": "a"}, {"agent_id": "a"}]}

        with pytest.raises(ConfigurationError, match="Duplicate agent ids: a"):
            settings_from_dict(document)

    def test_unknown_orchestrator(self) -> None:
        document = {"agents": [{"agent_id": "a"}], "deputy_id": "ghost"}

        with pytest.raises(ConfigurationError, match="deputy_id"):
            settings_from_dict(document)


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_loads_file(self, tmp_path) -> None:  # noqa: ANN001
        path = tmp_path / "concord.json"
        path.write_text(json.dumps(VALID))

        assert len(load_settings(path).tool_catalog) == 2

    def test_missing_file(self, tmp_path) -> None:  # noqa: ANN001
        with pytest.raises(ConfigurationError, match="not found"):
            load_settings(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path) -> None:  # noqa: ANN001
        path = tmp_path / "concord.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            load_settings(path)

    def test_non_object(self, tmp_path) -> None:  # noqa: ANN001
        path = tmp_path / "concord.json"
        path.write_text("[]")

        with pytest.raises(ConfigurationError, match="Expected object"):
            load_settings(path)
