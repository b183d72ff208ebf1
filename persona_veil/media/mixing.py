"""Traffic-mixing plans handed to the transport layer.

Nothing here relays traffic. The planner turns a persona's mixing settings
into concrete, freshly randomized parameters (hops, delays, headers) that the
network layer is expected to honor.
"""
from __future__ import annotations

from persona_veil.crypto import primitives
from persona_veil.errors import RoutingDisabled
from persona_veil.models import DelayPlan, Persona, RouteHop

HOP_TTL_SECONDS = 300
NODE_ID_BYTES = 8
EPHEMERAL_KEY_BYTES = 16

COMMON_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
)
COMMON_LANGUAGES = ("en-US,en;q=0.9", "en-GB,en;q=0.9", "en-US,en;q=0.8,es;q=0.5")


class TrafficMixingPlanner:
    def plan_route(self, persona: Persona) -> list[RouteHop]:
        """Ordered hops for multi-path routing. Raises RoutingDisabled when it is off."""
        params = persona.crypto.mixing_parameters
        if not params.multi_path_routing:
            raise RoutingDisabled("Multi-path routing is disabled for this persona")
        return [
            RouteHop(
                node_id=primitives.random_hex(NODE_ID_BYTES),
                ephemeral_key=primitives.random_hex(EPHEMERAL_KEY_BYTES),
                ttl=HOP_TTL_SECONDS,
            )
            for _ in range(params.proxy_hops)
        ]

    def delay_plan(self, persona: Persona) -> DelayPlan:
        params = persona.crypto.mixing_parameters
        if not params.timing_noise:
            raise RoutingDisabled("Timing noise is disabled for this persona")
        low, high = params.random_delay.min_ms, params.random_delay.max_ms
        return DelayPlan(
            min_delay_ms=low,
            max_delay_ms=high,
            delay_ms=low + primitives.random_below(high - low + 1),
        )

    def randomized_headers(self, persona: Persona) -> dict[str, str]:
        protection = persona.crypto.fingerprinting_protection
        if not protection.randomize_headers:
            raise RoutingDisabled("Header randomization is disabled for this persona")
        if protection.mimic_common_browsers:
            return {
                "User-Agent": primitives.random_choice(COMMON_USER_AGENTS),
                "Accept-Language": primitives.random_choice(COMMON_LANGUAGES),
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "DNT": primitives.random_choice(("0", "1")),
            }
        return {
            "User-Agent": "Mozilla/5.0",
            "Accept": "*/*",
            "X-Request-Nonce": primitives.random_hex(8),
        }
