import pytest

from core.exceptions import AdapterNotFound, RegistryError, RegistrySealedError
from core.models import VenuePosition
from core.registry import CapabilityRegistry, VenueAdapter
from tests.helpers import OWNER, FakeAdapter, make_action


@pytest.fixture
def registry():
    reg = CapabilityRegistry()
    reg.register(FakeAdapter("alpha", ["swap"]))
    reg.register(FakeAdapter("beta", ["swap", "stake"]))
    return reg


class TestLookup:
    def test_find_by_action_returns_first_registered(self, registry):
        assert registry.find_by_action("swap").venue_id == "alpha"

    def test_find_all_by_action_keeps_registration_order(self, registry):
        assert [a.venue_id for a in registry.find_all_by_action("swap")] == ["alpha", "beta"]

    def test_find_by_action_unknown_kind(self, registry):
        assert registry.find_by_action("lend") is None
        assert registry.find_all_by_action("lend") == []

    def test_find_by_capability(self, registry):
        assert [a.venue_id for a in registry.find_by_capability("stake")] == ["beta"]

    def test_get_unknown_venue_lists_available(self, registry):
        with pytest.raises(AdapterNotFound) as exc:
            registry.get("kamino")
        assert exc.value.venue == "kamino"
        assert exc.value.available == ["alpha", "beta"]

    def test_contains_and_len(self, registry):
        assert "alpha" in registry
        assert "kamino" not in registry
        assert len(registry) == 2


class TestLifecycle:
    def test_duplicate_venue_rejected(self, registry):
        with pytest.raises(RegistryError):
            registry.register(FakeAdapter("alpha", ["lend"]))

    def test_missing_venue_id_rejected(self):
        with pytest.raises(RegistryError):
            CapabilityRegistry().register(FakeAdapter("", ["swap"]))

    def test_register_after_initialize_is_sealed(self, registry):
        registry.initialize_all()
        assert registry.initialized
        with pytest.raises(RegistrySealedError):
            registry.register(FakeAdapter("gamma", ["swap"]))

    def test_initialize_passes_per_venue_config(self):
        reg = CapabilityRegistry()
        adapter = FakeAdapter("alpha")
        reg.register(adapter)
        reg.initialize_all({"alpha": {"endpoint": "https://alpha"}})
        assert adapter.initialized_with == {"endpoint": "https://alpha"}

    def test_initialize_failure_is_reported_not_raised(self):
        reg = CapabilityRegistry()
        reg.register(FakeAdapter("alpha", init_error=RuntimeError("boom")))
        reg.register(FakeAdapter("beta"))

        errors = reg.initialize_all()

        assert errors == {"alpha": "boom"}
        assert "alpha" in reg
        assert reg.summary()["venues"][0]["init_error"] == "boom"

    def test_initialize_is_idempotent(self, registry):
        assert registry.initialize_all() == {}
        assert registry.initialize_all() == {}


class TestHealthAndPositions:
    def test_raising_health_check_becomes_unhealthy_entry(self):
        reg = CapabilityRegistry()
        reg.register(FakeAdapter("alpha"))
        reg.register(FakeAdapter("beta", health_error=ConnectionError("unreachable")))

        results = {h.venue: h for h in reg.health_check_all()}

        assert results["alpha"].healthy is True
        assert results["beta"].healthy is False
        assert "unreachable" in results["beta"].error

    def test_positions_skip_failing_adapters(self):
        position = VenuePosition(venue="alpha", asset="mSOL", quantity=1_000_000_000, value_usd=110.0)
        reg = CapabilityRegistry()
        reg.register(FakeAdapter("alpha", positions=[position]))
        reg.register(FakeAdapter("beta", positions_error=TimeoutError("slow")))

        assert reg.positions(OWNER) == [position]

    def test_summary_lists_capabilities(self, registry):
        summary = registry.summary()
        assert summary["capabilities"]["swap"] == ["alpha", "beta"]
        assert [v["venue"] for v in summary["venues"]] == ["alpha", "beta"]


def test_default_builders_raise_not_implemented():
    class SwapOnly(VenueAdapter):
        venue_id = "swaponly"

        def capabilities(self):
            return ["swap"]

    with pytest.raises(NotImplementedError):
        SwapOnly().build_instructions(make_action(kind="stake"), OWNER)
