"""
Builds the route ↔ stop service graph from GTFS trips and stop times.

Graph structure (undirected, bipartite):
  Nodes: ("route", route_id) and ("stop", stop_id) tuples,
          attributed with {kind: "route" | "stop"}
  Edges: route R serves stop S on at least one trip
          attrs: {trips: number of trips of R calling at S}

The ScheduleIndex builds this once per load.  Both adjacency queries
(stops for a route, routes for a stop) are neighbour lookups on it instead
of repeated trips × stop_times scans.
"""

import logging

import networkx as nx
import pandas as pd

logger = logging.getLogger(__name__)

ROUTE = "route"
STOP = "stop"


def build_service_graph(trips: pd.DataFrame, stop_times: pd.DataFrame) -> nx.Graph:
    """
    Join stop_times to trips on trip_id and add one edge per distinct
    (route_id, stop_id) pair.

    Edge insertion follows stop_times order, so neighbour iteration is
    deterministic for a given feed.  Stop times whose trip is unknown are
    dropped by the inner join.
    """
    G = nx.Graph()
    if trips.empty or stop_times.empty:
        logger.info("Service graph empty (trips=%d, stop_times=%d).", len(trips), len(stop_times))
        return G

    joined = stop_times[["trip_id", "stop_id"]].merge(
        trips[["trip_id", "route_id"]], on="trip_id", how="inner", sort=False
    )
    counts = (
        joined.groupby(["route_id", "stop_id"], sort=False)
        .size()
        .reset_index(name="trips")
    )

    for route_id, stop_id, n_trips in counts.itertuples(index=False):
        G.add_node((ROUTE, route_id), kind=ROUTE)
        G.add_node((STOP, stop_id), kind=STOP)
        G.add_edge((ROUTE, route_id), (STOP, stop_id), trips=int(n_trips))

    logger.info(
        "Service graph built: %d routes, %d stops, %d route/stop edges.",
        sum(1 for _, k in G.nodes(data="kind") if k == ROUTE),
        sum(1 for _, k in G.nodes(data="kind") if k == STOP),
        G.number_of_edges(),
    )
    return G


def stop_ids_for_route(G: nx.Graph, route_id: str) -> list[str]:
    node = (ROUTE, route_id)
    if node not in G:
        return []
    return [stop_id for _, stop_id in G.neighbors(node)]


def route_ids_for_stop(G: nx.Graph, stop_id: str) -> list[str]:
    node = (STOP, stop_id)
    if node not in G:
        return []
    return [route_id for _, route_id in G.neighbors(node)]
