from datetime import datetime, timezone

import pytest

from persona_veil.errors import RoutingDisabled
from persona_veil.media.mixing import HOP_TTL_SECONDS, TrafficMixingPlanner
from persona_veil.models import (
    CryptoMaterial,
    FingerprintingProtection,
    MixingParameters,
    Persona,
    RandomDelay,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _persona(mixing=MixingParameters(), protection=FingerprintingProtection()) -> Persona:
    return Persona(
        persona_id="p" * 64,
        owner_user_id="user-1",
        display_name="BraveComet1",
        crypto=CryptoMaterial(
            public_key_hash="ab" * 32,
            stealth_address="cd" * 32,
            salt="00" * 16,
            mixing_parameters=mixing,
            fingerprinting_protection=protection,
        ),
        created_at=NOW,
        updated_at=NOW,
    )


@pytest.fixture
def planner():
    return TrafficMixingPlanner()


def test_route_has_configured_hops(planner):
    hops = planner.plan_route(_persona(MixingParameters(proxy_hops=4)))
    assert len(hops) == 4
    assert all(h.ttl == HOP_TTL_SECONDS for h in hops)
    assert all(len(h.node_id) == 16 and len(h.ephemeral_key) == 32 for h in hops)
    assert len({h.node_id for h in hops}) == 4


def test_route_disabled(planner):
    with pytest.raises(RoutingDisabled):
        planner.plan_route(_persona(MixingParameters(multi_path_routing=False)))


def test_delay_within_bounds(planner):
    persona = _persona(MixingParameters(random_delay=RandomDelay(min_ms=10, max_ms=20)))
    for _ in range(100):
        plan = planner.delay_plan(persona)
        assert 10 <= plan.delay_ms <= 20


def test_delay_disabled(planner):
    with pytest.raises(RoutingDisabled):
        planner.delay_plan(_persona(MixingParameters(timing_noise=False)))


def test_headers_mimic_browsers(planner):
    headers = planner.randomized_headers(_persona())
    assert headers["User-Agent"].startswith("Mozilla/5.0 (")
    assert "Accept-Language" in headers


def test_headers_minimal_set(planner):
    headers = planner.randomized_headers(
        _persona(protection=FingerprintingProtection(mimic_common_browsers=False))
    )
    assert headers["User-Agent"] == "Mozilla/5.0"
    assert "X-Request-Nonce" in headers


def test_headers_disabled(planner):
    with pytest.raises(RoutingDisabled):
        planner.randomized_headers(_persona(protection=FingerprintingProtection(randomize_headers=False)))


def test_invalid_delay_window_rejected():
    with pytest.raises(ValueError):
        RandomDelay(min_ms=600, max_ms=500)
