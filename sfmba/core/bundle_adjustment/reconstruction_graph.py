"""
Reconstruction graph for partial refinement

Builds a graph representation of the reconstruction with:
- View nodes: One per view with a defined pose and intrinsic
- View-view edges: Weighted by covisibility (number of shared landmarks)
- Touched ids: poses/intrinsics changed by the latest incremental step

During incremental reconstruction only touched ids (optionally expanded by a
few hops along covisibility edges) are refined; everything else stays fixed.
An empty graph (nothing touched) means full refinement.
"""

import logging
from typing import Dict, Iterable, Optional, Set, Tuple
from dataclasses import dataclass, field
from collections import defaultdict
from itertools import combinations

from .config import ReconstructionGraphConfig
from ..sfm_data import SfMData

logger = logging.getLogger(__name__)


@dataclass
class ViewNode:
    """View node in reconstruction graph"""

    view_id: int
    pose_id: int
    intrinsic_id: int

    # Connectivity
    neighbors: Set[int] = field(default_factory=set)  # Set of connected view IDs
    covisibility: Dict[int, int] = field(default_factory=dict)  # {view_id: num_shared_landmarks}

    def degree(self) -> int:
        """Number of connected views"""
        return len(self.neighbors)

    def total_covisibility(self) -> int:
        """Total number of shared landmarks across all neighbors"""
        return sum(self.covisibility.values())


class ReconstructionGraph:
    """
    Reconstruction graph data structure

    Represents the reconstruction as a graph with views as nodes and
    covisibility relationships as edges, plus the set of touched ids.
    """

    def __init__(self):
        self.views: Dict[int, ViewNode] = {}  # {view_id: ViewNode}
        self.touched_views: Set[int] = set()
        self.touched_poses: Set[int] = set()
        self.touched_intrinsics: Set[int] = set()

    def add_view(self, node: ViewNode) -> None:
        """Add view node to graph"""
        self.views[node.view_id] = node

    def add_edge(self, view1_id: int, view2_id: int, weight: int) -> None:
        """Add bidirectional edge between views with covisibility weight"""
        if view1_id not in self.views or view2_id not in self.views:
            raise ValueError(f"View IDs {view1_id} or {view2_id} not in graph")

        self.views[view1_id].neighbors.add(view2_id)
        self.views[view2_id].neighbors.add(view1_id)
        self.views[view1_id].covisibility[view2_id] = weight
        self.views[view2_id].covisibility[view1_id] = weight

    def mark_views_touched(self, view_ids: Iterable[int]) -> None:
        view_ids = set(view_ids)
        unknown = view_ids - set(self.views)
        if unknown:
            raise ValueError(f"View IDs {sorted(unknown)} not in graph")
        self.touched_views.update(view_ids)

    def mark_poses_touched(self, pose_ids: Iterable[int]) -> None:
        self.touched_poses.update(pose_ids)

    def mark_intrinsics_touched(self, intrinsic_ids: Iterable[int]) -> None:
        self.touched_intrinsics.update(intrinsic_ids)

    def is_empty(self) -> bool:
        """True when nothing was touched (full refinement applies)"""
        return not (self.touched_views or self.touched_poses or self.touched_intrinsics)

    def get_neighbors(self, view_id: int, max_hops: int = 1) -> Set[int]:
        """
        Get neighbors within max_hops distance

        Args:
            view_id: View ID
            max_hops: Maximum graph distance (1 = direct neighbors, 2 = friends-of-friends)

        Returns:
            Set of view IDs within max_hops
        """
        if view_id not in self.views:
            return set()

        visited = {view_id}
        current_frontier = {view_id}

        for _ in range(max_hops):
            next_frontier = set()
            for node_id in current_frontier:
                neighbors = self.views[node_id].neighbors
                next_frontier.update(neighbors - visited)
            visited.update(next_frontier)
            current_frontier = next_frontier

        visited.remove(view_id)  # Remove self
        return visited

    def refined_view_ids(self, max_hops: int = 0) -> Set[int]:
        refined = set(self.touched_views)
        if max_hops > 0:
            for view_id in self.touched_views:
                refined.update(self.get_neighbors(view_id, max_hops))
        return refined

    def refined_pose_ids(self, max_hops: int = 0) -> Set[int]:
        """Touched poses plus the poses of refined views"""
        refined = set(self.touched_poses)
        refined.update(self.views[v].pose_id for v in self.refined_view_ids(max_hops))
        return refined

    def refined_intrinsic_ids(self, max_hops: int = 0) -> Set[int]:
        """Touched intrinsics plus the intrinsics of refined views"""
        refined = set(self.touched_intrinsics)
        refined.update(self.views[v].intrinsic_id for v in self.refined_view_ids(max_hops))
        return refined

    def num_views(self) -> int:
        """Number of view nodes"""
        return len(self.views)

    def num_edges(self) -> int:
        """Number of edges (undirected)"""
        return sum(node.degree() for node in self.views.values()) // 2

    def __repr__(self) -> str:
        return (
            f"ReconstructionGraph(views={self.num_views()}, edges={self.num_edges()}, "
            f"touched_views={len(self.touched_views)}, touched_poses={len(self.touched_poses)}, "
            f"touched_intrinsics={len(self.touched_intrinsics)})"
        )


class ReconstructionGraphBuilder:
    """
    Build reconstruction graph from an SfMData

    Constructs the covisibility graph from the landmark tracks.
    """

    def __init__(self, config: Optional[ReconstructionGraphConfig] = None):
        """
        Args:
            config: ReconstructionGraphConfig or None (uses defaults)
        """
        self.config = config or ReconstructionGraphConfig()
        self.logger = logging.getLogger(__name__)

    def build(self, sfm_data: SfMData) -> ReconstructionGraph:
        """
        Build reconstruction graph

        Args:
            sfm_data: reconstruction with views, poses, intrinsics and structure

        Returns:
            ReconstructionGraph instance (nothing touched yet)
        """
        graph = ReconstructionGraph()

        # Step 1: Create view nodes
        for view_id, view in sfm_data.views.items():
            if not sfm_data.is_pose_and_intrinsic_defined(view):
                continue
            graph.add_view(ViewNode(view_id=view_id, pose_id=view.pose_id, intrinsic_id=view.intrinsic_id))

        self.logger.debug(f"Created {graph.num_views()} view nodes")

        # Step 2: Add edges from shared landmarks
        covisibility_counts = self._compute_covisibility(sfm_data, set(graph.views))
        num_edges = 0
        min_covis = self.config.min_covisibility

        for (view1, view2), num_shared in covisibility_counts.items():
            if num_shared < min_covis:
                continue
            graph.add_edge(view1, view2, num_shared)
            num_edges += 1

        self.logger.debug(f"Added {num_edges} edges (covisibility >= {min_covis})")
        self.logger.info(f"Reconstruction graph built: {graph}")
        return graph

    def _compute_covisibility(
        self,
        sfm_data: SfMData,
        valid_views: Set[int],
    ) -> Dict[Tuple[int, int], int]:
        """
        Returns:
            {(view1, view2): num_shared_landmarks} with view1 < view2
        """
        covisibility: Dict[Tuple[int, int], int] = defaultdict(int)

        for landmark in sfm_data.structure.values():
            view_ids = sorted(v for v in landmark.observations if v in valid_views)
            for pair in combinations(view_ids, 2):
                covisibility[pair] += 1

        return covisibility
