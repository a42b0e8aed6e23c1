"""
File tree clustering for blame-strata.

Groups a flat list of repository file paths into bounded-size clusters that
follow the directory structure, so that per-author statistics can be reported
per cluster instead of per file or per repository.

Two strategies share the same prefix tree:

- peel (default): top-down. A directory that is too large gives up its
  largest subdirectories as separate clusters until what is left fits.
- merge: bottom-up. Undersized children are absorbed or hoisted into their
  parent until a full pass changes nothing.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Tuple

SEPARATOR = "/"
STRATEGIES = ("peel", "merge")


# ============================================================================
# DATA STRUCTURES
# ============================================================================


@dataclass(frozen=True)
class FileInfo:
    """A tracked file: its original path and its parsed segments."""

    path: str
    segments: Tuple[str, ...]

    @classmethod
    def from_path(cls, path: str) -> "FileInfo":
        return cls(path=path, segments=tuple(path.split(SEPARATOR)))

    @property
    def directories(self) -> Tuple[str, ...]:
        return self.segments[:-1]


@dataclass
class ClusterTreeNode:
    """
    Node of the path prefix tree.

    ``size`` counts every file whose walk passed through this node, so it is
    the file count of the whole subtree. ``files`` holds only the files that
    terminate here.
    """

    path: Tuple[str, ...] = ()
    children: Dict[str, "ClusterTreeNode"] = field(default_factory=dict)
    files: List[FileInfo] = field(default_factory=list)
    size: int = 0

    @property
    def path_str(self) -> str:
        return SEPARATOR.join(self.path)

    def child(self, segment: str) -> "ClusterTreeNode":
        """Return the child for ``segment``, creating it on first use."""
        node = self.children.get(segment)
        if node is None:
            node = ClusterTreeNode(path=self.path + (segment,))
            self.children[segment] = node
        return node

    def flatten(self) -> List[FileInfo]:
        """All files of the subtree, depth-first, children before own files."""
        result = []
        for child in self.children.values():
            result.extend(child.flatten())
        result.extend(self.files)
        return result


@dataclass(frozen=True)
class FileTreeCluster:
    path: str
    files: Tuple[str, ...]
    weight: int
    is_leftovers: bool

    @classmethod
    def from_files(
        cls, path: Sequence[str], files: Iterable[FileInfo], is_leftovers: bool
    ) -> "FileTreeCluster":
        paths = tuple(info.path for info in files)
        return cls(
            path=SEPARATOR.join(path),
            files=paths,
            weight=len(paths),
            is_leftovers=is_leftovers,
        )

    def to_dict(self) -> Dict:
        return {
            "path": self.path,
            "files": list(self.files),
            "weight": self.weight,
            "isLeftovers": self.is_leftovers,
        }


def build_tree(
    files: Iterable[FileInfo], group_by_directory: bool = False
) -> ClusterTreeNode:
    """
    Build the prefix tree for ``files``.

    Args:
        files: Parsed file paths, in input order
        group_by_directory: Store each file on its containing directory node
            instead of on a leaf node of its own

    Returns:
        The root node (empty path)
    """
    root = ClusterTreeNode()
    for info in files:
        segments = info.directories if group_by_directory else info.segments
        node = root
        node.size += 1
        for segment in segments:
            node = node.child(segment)
            node.size += 1
        node.files.append(info)
    return root


# ============================================================================
# PEEL STRATEGY (TOP-DOWN)
# ============================================================================


def _anchor(node: ClusterTreeNode) -> ClusterTreeNode:
    """Descend to the deepest prefix shared by every file below ``node``."""
    while not node.files and len(node.children) == 1:
        node = next(iter(node.children.values()))
    return node


def _peel(
    node: ClusterTreeNode,
    max_size: int,
    min_size: int,
    clusters: List[FileTreeCluster],
):
    if node.size == 0:
        return

    if node.size <= max_size:
        clusters.append(FileTreeCluster.from_files(node.path, node.flatten(), False))
        return

    # sorted() is stable, so equally frequent segments keep input order
    by_size = sorted(node.children.items(), key=lambda item: -item[1].size)
    remaining = node.size
    peeled = []
    for segment, child in by_size:
        if remaining <= max_size or child.size < min_size:
            break
        peeled.append(segment)
        remaining -= child.size

    leftovers = list(node.files)
    for segment, child in node.children.items():
        if segment not in peeled:
            leftovers.extend(child.flatten())
    if leftovers:
        clusters.append(
            FileTreeCluster.from_files(node.path, leftovers, bool(peeled))
        )

    for segment in peeled:
        _peel(node.children[segment], max_size, min_size, clusters)


# ============================================================================
# MERGE STRATEGY (BOTTOM-UP FIXED POINT)
# ============================================================================


def unpack_smallest(node: ClusterTreeNode, max_size: int, min_size: int) -> bool:
    """
    Absorb the smallest child subtree into ``node`` when ``node`` is too small
    to stand alone and the child fits next to its own files.
    """
    if not node.children:
        return False

    segment, child = min(node.children.items(), key=lambda item: item[1].size)
    can_fit = child.size + len(node.files) <= max_size
    cannot_isolate = len(node.files) < min_size
    if can_fit and cannot_isolate:
        node.files.extend(child.flatten())
        del node.children[segment]
        return True
    return False


def bubble_leftovers(node: ClusterTreeNode, max_size: int, min_size: int) -> bool:
    """
    Collapse ``node`` into a single cluster when its subtree fits, otherwise
    hoist the files of undersized children up one level.
    """
    if not node.children:
        return False

    if node.size <= max_size:
        node.files = node.flatten()
        node.children = {}
        return True

    changed = False
    for segment, child in list(node.children.items()):
        if child.files and len(child.files) < min_size:
            node.files.extend(child.files)
            child.size -= len(child.files)
            child.files = []
            changed = True
            if child.size == 0:
                del node.children[segment]
    return changed


def merge_pass(node: ClusterTreeNode, max_size: int, min_size: int) -> bool:
    """One bottom-up pass. Returns True if anything moved."""
    changed = False
    for child in list(node.children.values()):
        changed = merge_pass(child, max_size, min_size) or changed
    changed = unpack_smallest(node, max_size, min_size) or changed
    changed = bubble_leftovers(node, max_size, min_size) or changed
    return changed


def collect(node: ClusterTreeNode) -> List[ClusterTreeNode]:
    """All nodes of the tree in pre-order."""
    result = [node]
    for child in node.children.values():
        result.extend(collect(child))
    return result


def _merge(
    root: ClusterTreeNode,
    max_size: int,
    min_size: int,
    clusters: List[FileTreeCluster],
):
    while merge_pass(root, max_size, min_size):
        pass

    for node in collect(root):
        if node.files:
            clusters.append(
                FileTreeCluster.from_files(
                    node.path, node.files, node.size > min_size
                )
            )


# ============================================================================
# PUBLIC API
# ============================================================================


def cluster_files(
    file_paths: Sequence[str],
    cluster_max_size: int,
    cluster_min_size: int,
    strategy: str = "peel",
) -> List[FileTreeCluster]:
    """
    Partition ``file_paths`` into directory-aligned clusters.

    Args:
        file_paths: Slash-separated paths; paths without a slash are root files
        cluster_max_size: Preferred upper bound on files per cluster
        cluster_min_size: Lower bound below which a group is not split off
        strategy: "peel" (top-down) or "merge" (bottom-up)

    Returns:
        Clusters sorted by descending path. Every input file appears in
        exactly one cluster. Empty input gives an empty list.
    """
    if cluster_min_size < 1:
        raise ValueError(f"cluster_min_size must be >= 1, got {cluster_min_size}")
    if cluster_max_size < cluster_min_size:
        raise ValueError(
            f"cluster_max_size ({cluster_max_size}) must be >= "
            f"cluster_min_size ({cluster_min_size})"
        )
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown clustering strategy: {strategy}")

    infos = [FileInfo.from_path(path) for path in file_paths]
    clusters: List[FileTreeCluster] = []

    if strategy == "peel":
        root = build_tree(infos)
        _peel(_anchor(root), cluster_max_size, cluster_min_size, clusters)
    else:
        root = build_tree(infos, group_by_directory=True)
        _merge(root, cluster_max_size, cluster_min_size, clusters)

    return sorted(clusters, key=lambda cluster: cluster.path, reverse=True)


def cluster_lookup(clusters: Iterable[FileTreeCluster]) -> Dict[str, str]:
    """Map every clustered file path to the path of its cluster."""
    return {path: cluster.path for cluster in clusters for path in cluster.files}


def default_cluster_bounds(file_count: int) -> Tuple[int, int]:
    """Return ``(max_size, min_size)`` scaled to the number of files."""
    min_size = max(5, file_count // 1000)
    return max(20, min_size * 2), min_size
