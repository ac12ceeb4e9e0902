"""
Stop sequencing for delivery routes.

The engine never computes routes itself: it validates the stops, decides
whether the trip loops back to the origin and hands the rest to a routing
service. GoogleDirectionsRouter is the production service, backed by the
Google Directions API with waypoint optimization.
"""
import logging
import math
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

import requests

from . import config
from .errors import InvalidStop, RoutingUnavailable, TooManyStops
from .schemas import Coordinates, OptimizedRoute, RouteStop
from .utils import as_utc, utcnow

logger = logging.getLogger(__name__)


class RoutingService(Protocol):
    def optimize(
        self,
        start: Coordinates,
        stops: List[RouteStop],
        return_to_start: bool,
        timeout: Optional[float] = None,
    ) -> OptimizedRoute:
        ...


def _valid_coordinates(coords: Optional[Coordinates]) -> bool:
    if coords is None:
        return False
    if not (math.isfinite(coords.lat) and math.isfinite(coords.lng)):
        return False
    return -90 <= coords.lat <= 90 and -180 <= coords.lng <= 180


def _as_waypoint(coords):
    return f"{coords.lat},{coords.lng}"


class GoogleDirectionsRouter:
    def __init__(
        self,
        api_key: str = config.GOOGLE_MAPS_API_KEY,
        session: Optional[requests.Session] = None,
        url: str = config.GOOGLE_DIRECTIONS_URL,
        timeout: float = config.ROUTING_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.url = url
        self.timeout = timeout

    def optimize(self, start, stops, return_to_start, timeout=None):
        """Ask the Directions API for the best visiting order.

        Round trips optimize every stop. One-way trips keep the caller's last
        stop as the fixed end of the route and only reorder the stops before
        it, so put the drop-off that must come last at the end of `stops`.
        """
        if not self.api_key:
            raise RoutingUnavailable("Google Maps API key is not configured")

        # One-way trips end at the last stop, which is then not a waypoint
        if return_to_start:
            waypoint_stops = list(stops)
            destination = _as_waypoint(start)
        else:
            waypoint_stops = list(stops[:-1])
            destination = _as_waypoint(stops[-1].coordinates)

        params = {
            "origin": _as_waypoint(start),
            "destination": destination,
            "mode": "driving",
            "units": "metric",
            "key": self.api_key,
        }
        if waypoint_stops:
            params["waypoints"] = "|".join(
                ["optimize:true"] + [_as_waypoint(s.coordinates) for s in waypoint_stops]
            )

        effective_timeout = self.timeout if timeout is None else min(self.timeout, timeout)
        try:
            response = self.session.get(self.url, params=params, timeout=effective_timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise RoutingUnavailable(str(e)) from e
        except ValueError as e:
            raise RoutingUnavailable(f"invalid response body: {e}") from e

        if data.get("status") != "OK" or not data.get("routes"):
            raise RoutingUnavailable(f"Route optimization failed: {data.get('status', 'UNKNOWN')}")

        try:
            route = data["routes"][0]
            waypoint_order = route.get("waypoint_order") or list(range(len(waypoint_stops)))
            ordered = [waypoint_stops[i] for i in waypoint_order]
            total_distance = sum(leg["distance"]["value"] for leg in route["legs"])
            total_duration = sum(leg["duration"]["value"] for leg in route["legs"])
            polyline = route.get("overview_polyline", {}).get("points")
        except (KeyError, IndexError, TypeError) as e:
            raise RoutingUnavailable(f"unexpected response shape: {e}") from e

        if not return_to_start:
            ordered.append(stops[-1])

        return OptimizedRoute(
            ordered_stops=ordered,
            total_distance=total_distance,
            total_duration=total_duration,
            polyline=polyline,
        )


def validate_stops(start: Coordinates, stops: Sequence[RouteStop], max_stops: int = config.MAX_ROUTE_STOPS):
    if not stops:
        raise InvalidStop(None, "at least one stop is required")
    if len(stops) > max_stops:
        raise TooManyStops(len(stops), max_stops)
    if not _valid_coordinates(start):
        raise InvalidStop(None, "start location has invalid coordinates")
    for index, stop in enumerate(stops):
        if not _valid_coordinates(stop.coordinates):
            raise InvalidStop(index, f"order '{stop.order_id}' has missing or invalid coordinates")


def _with_sequence(stops: Sequence[RouteStop]) -> List[RouteStop]:
    return [stop.model_copy(update={"sequence": seq}) for seq, stop in enumerate(stops, start=1)]


def manual_route(stops: Sequence[RouteStop]) -> OptimizedRoute:
    """Stops in the order given, for when optimization is skipped or unavailable."""
    return OptimizedRoute(ordered_stops=_with_sequence(stops), optimized=False)


def optimize_route(
    start: Coordinates,
    stops: Sequence[RouteStop],
    return_to_start: bool = True,
    router: Optional[RoutingService] = None,
    deadline: Optional[datetime] = None,
    max_stops: int = config.MAX_ROUTE_STOPS,
) -> OptimizedRoute:
    """Validate locally, then ask the routing service for the stop order.

    Validation failures raise before any network call. `deadline` bounds the
    routing call; a deadline that has already passed counts as unavailable.
    """
    validate_stops(start, stops, max_stops)

    if router is None:
        raise RoutingUnavailable("no routing service configured")

    timeout = None
    if deadline is not None:
        timeout = (as_utc(deadline) - utcnow()).total_seconds()
        if timeout <= 0:
            raise RoutingUnavailable("deadline passed before the routing call")

    try:
        result = router.optimize(start, list(stops), return_to_start, timeout=timeout)
    except RoutingUnavailable as e:
        logger.warning("Route optimization for %d stops failed: %s", len(stops), e.reason)
        raise

    returned_ids = sorted(s.order_id for s in result.ordered_stops)
    if returned_ids != sorted(s.order_id for s in stops):
        raise RoutingUnavailable("routing service returned a different set of stops")

    return result.model_copy(update={"ordered_stops": _with_sequence(result.ordered_stops)})
