# core/kdtree.py

import heapq
import itertools
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np

from core.types import FeaturePoint, KDTreeNode

MAX_HEIGHT_DIFFERENCE = 2


class KDTree:
    """
    KD-tree over fixed-length vectors

    Supports median-split bulk builds, top-down incremental inserts and
    branch-and-bound k-nearest-neighbour search. Nodes are never rotated;
    an unbalanced tree is rebuilt wholesale by its owner.
    """

    def __init__(self, dimension: Optional[int] = None):
        self.root: Optional[KDTreeNode] = None
        self.dimension = dimension
        self.size = 0

    def __len__(self):
        return self.size

    def _check_dimension(self, vector: np.ndarray):
        if self.dimension is None:
            self.dimension = len(vector)
        elif len(vector) != self.dimension:
            raise ValueError(
                f"Vector length {len(vector)} does not match tree dimension {self.dimension}"
            )

    def build(self, points: Iterable[FeaturePoint]):
        """Replace the tree with a median-split build of `points`"""
        points = list(points)
        dimension = self.dimension
        for point in points:
            if dimension is None:
                dimension = len(point.vector)
            elif len(point.vector) != dimension:
                raise ValueError(
                    f"Vector length {len(point.vector)} does not match tree dimension {dimension}"
                )
        self.dimension = dimension
        # Swap the root in one assignment so readers see old or new, never half
        self.root = self._build(points, 0) if points else None
        self.size = len(points)

    def _build(self, points: List[FeaturePoint], depth: int) -> Optional[KDTreeNode]:
        if not points:
            return None
        axis = depth % self.dimension
        points.sort(key=lambda p: p.vector[axis])
        median = len(points) // 2
        return KDTreeNode(
            point=points[median],
            split_dimension=axis,
            left=self._build(points[:median], depth + 1),
            right=self._build(points[median + 1:], depth + 1),
        )

    def insert(self, point: FeaturePoint):
        """Top-down insertion as a new leaf, split dimension = depth % length"""
        self._check_dimension(point.vector)
        if self.root is None:
            self.root = KDTreeNode(point=point, split_dimension=0)
            self.size = 1
            return

        node = self.root
        depth = 0
        while True:
            axis = node.split_dimension
            depth += 1
            if point.vector[axis] < node.point.vector[axis]:
                if node.left is None:
                    node.left = KDTreeNode(point, depth % self.dimension)
                    break
                node = node.left
            else:
                if node.right is None:
                    node.right = KDTreeNode(point, depth % self.dimension)
                    break
                node = node.right
        self.size += 1

    def collect(self) -> List[FeaturePoint]:
        points = []
        stack = [self.root] if self.root else []
        while stack:
            node = stack.pop()
            points.append(node.point)
            if node.left:
                stack.append(node.left)
            if node.right:
                stack.append(node.right)
        return points

    def _heights(self) -> Tuple[int, bool]:
        """Tree height and whether every node's children differ by at most 2"""
        if self.root is None:
            return 0, True
        heights = {}
        balanced = True
        stack = [(self.root, False)]
        while stack:
            node, expanded = stack.pop()
            if not expanded:
                stack.append((node, True))
                for child in (node.left, node.right):
                    if child is not None:
                        stack.append((child, False))
                continue
            left = heights.pop(id(node.left), 0) if node.left else 0
            right = heights.pop(id(node.right), 0) if node.right else 0
            if abs(left - right) > MAX_HEIGHT_DIFFERENCE:
                balanced = False
            heights[id(node)] = max(left, right) + 1
        return heights[id(self.root)], balanced

    def height(self) -> int:
        return self._heights()[0]

    def is_balanced(self) -> bool:
        return self._heights()[1]

    def rebuild(self):
        self.build(self.collect())

    def k_nearest(self, query, k: int,
                  visit: Optional[Callable[[FeaturePoint], None]] = None
                  ) -> List[Tuple[float, FeaturePoint]]:
        """
        Branch-and-bound search for the k closest points

        Args:
            query: vector of the tree's dimension
            k: number of neighbours
            visit: called once for every point whose distance is evaluated

        Returns:
            (distance, point) pairs sorted by ascending distance
        """
        root = self.root
        if root is None or k <= 0:
            return []
        query = np.asarray(query, dtype=np.float64)
        self._check_dimension(query)

        # Max-heap on distance via negation; counter breaks ties
        best: List[Tuple[float, int, FeaturePoint]] = []
        counter = itertools.count()

        def search(node: Optional[KDTreeNode]):
            if node is None:
                return
            point = node.point
            if visit is not None:
                visit(point)
            distance = float(np.linalg.norm(query - point.vector))
            if len(best) < k:
                heapq.heappush(best, (-distance, next(counter), point))
            elif distance < -best[0][0]:
                heapq.heapreplace(best, (-distance, next(counter), point))

            axis = node.split_dimension
            gap = query[axis] - point.vector[axis]
            near, far = (node.left, node.right) if gap < 0 else (node.right, node.left)
            search(near)
            if len(best) < k or abs(gap) < -best[0][0]:
                search(far)

        search(root)
        return sorted(((-d, p) for d, _, p in best), key=lambda item: item[0])
