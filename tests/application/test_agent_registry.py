"""Tests for AgentRegistry."""

import pytest

from concord.application.agent_registry import AgentRegistry
from concord.domain.exceptions import ValidationError
from concord.domain.models import Agent, AgentRole


class TestRegistration:
    """Tests for register() and lookups."""

    def test_duplicate_rejected(self, registry):
        with pytest.raises(ValidationError, match="already registered"):
            registry.register(Agent("design"))

    def test_empty_id_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.register(Agent(""))

    def test_unknown_agent(self, registry):
        with pytest.raises(ValidationError, match="Unknown agent"):
            registry.get("ghost")

    def test_orchestrator_role_designates(self, registry):
        assert registry.orchestrator_id == "orchestrator"
        assert "design" in registry
        assert len(registry.all()) == 4

    def test_no_orchestrator(self):
        registry = AgentRegistry([Agent("a")])

        with pytest.raises(ValidationError, match="No orchestrator"):
            _ = registry.orchestrator


class TestAuthorityRoles:
    """Tests for orchestrator and deputy designation."""

    def test_set_orchestrator_demotes_previous(self, registry):
        registry.set_orchestrator("design")

        assert registry.orchestrator.agent_id == "design"
        assert registry.get("orchestrator").role is AgentRole.WORKER
        assert registry.get("design").authority_score == pytest.approx(1.5)

    def test_deputy_cannot_be_orchestrator(self, registry):
        with pytest.raises(ValidationError):
            registry.set_deputy("orchestrator")

    def test_arbiter_for(self, registry):
        """The deputy arbitrates when the orchestrator is a party."""
        registry.set_deputy("design")

        assert registry.arbiter_for(["performance"]).agent_id == "orchestrator"
        assert registry.arbiter_for(["orchestrator"]).agent_id == "design"
        assert registry.arbiter_for(["orchestrator", "design"]) is None

    def test_adjust_authority_clamped(self, registry):
        assert registry.adjust_authority("performance", 5.0) == 2.0
        assert registry.adjust_authority("performance", -5.0) == 0.5
