"""Deep observation of a nested state tree.

This module turns a plain nested structure of dicts, lists and primitive
values into an *observed tree*: a tree of `ObservedDict` and `ObservedList`
wrappers that read exactly like the plain containers but report every write
and deletion, at any depth, to a single `ChangeHandler`.

    >>> observer = DeepObserver(handler)
    >>> tree = observer.observe({"server": {"game": {"players": {}}}})
    >>> tree.server.game.players["steve"] = {"health": 20}
    # handler.on_set(["server", "game", "players", "steve"], {...})
    >>> tree.server.game.players["steve"]["health"] = 5
    # handler.on_set(["server", "game", "players", "steve", "health"], 5)
    >>> del tree.server.game.players["steve"]
    # handler.on_delete(["server", "game", "players", "steve"])

Rules that hold for every observed tree:

*   Every mapping and list reachable from the root is wrapped. Plain values
    assigned into the tree are wrapped recursively *before* they are stored,
    so nested fields of a freshly assigned value are observed immediately.
*   Leaf values (numbers, strings, booleans, None, ...) are stored unwrapped.
*   Each wrapper belongs to exactly one location. Assigning a mapping, a list,
    a tuple or another wrapper copies its content; the caller's object is never
    retained by the tree.
*   Deleting or overwriting a wrapped value releases its whole subtree from
    the observer's registry (depth-first) before the handler is notified.
    Released wrappers keep their data but never report anything again.
*   Deleting a key that does not exist does nothing and reports nothing.
*   The path given to the handler is computed from the node's parent links at
    the moment of the mutation, so list re-indexing is always reflected.

List mutations are reported as follows: item assignment and `append()`
report the single item path; structural changes (`insert`, `pop`, `del`,
`clear`, `reverse`) report the whole list at the list's own path. Slice
assignment and slice deletion are not supported.
"""

import itertools
from abc import ABC, abstractmethod
from collections.abc import Mapping, MutableMapping, MutableSequence
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from . import logger
from .exceptions import PathError

Key = Union[str, int]
Path = List[Key]

_MISSING = object()


class ChangeHandler(ABC):
    """The pair of callbacks an observed tree reports its mutations to.

    `on_set` is called after a value has been stored (and fully wrapped);
    `on_delete` is called after a key has been removed.
    """

    @abstractmethod
    def on_set(self, path: Path, value: Any) -> None:
        raise NotImplementedError

    @abstractmethod
    def on_delete(self, path: Path) -> None:
        raise NotImplementedError


class DeepObserver:
    """Owns the registry of live wrappers for one observed tree.

    Every wrapper created under this observer is registered under a stable
    integer id, and unregistered again when its subtree is deleted or
    overwritten. `node_count` reports the registry size.

    Args:
        handler (ChangeHandler): Receives every mutation of the tree.
    """

    def __init__(self, handler: ChangeHandler):
        self._handler = handler
        self._nodes: Dict[int, "ObservedNode"] = {}
        self._ids = itertools.count(1)

    @property
    def handler(self) -> ChangeHandler:
        return self._handler

    @property
    def node_count(self) -> int:
        """The number of wrappers currently registered with this observer."""
        return len(self._nodes)

    def observe(self, mapping: Mapping) -> "ObservedDict":
        """Wraps a plain mapping as the root of an observed tree.

        The mapping is copied; later changes to the original object are not
        seen by the tree.

        Raises:
            TypeError: If `mapping` is not a mapping.
        """
        if not isinstance(mapping, Mapping):
            raise TypeError(f"Observed tree root must be a mapping, got {type(mapping).__name__}")
        root = _wrap(mapping, self, None, None)
        logger.debug(f"Observing new tree with {self.node_count} registered nodes.")
        return root

    def _register(self, node: "ObservedNode") -> int:
        node_id = next(self._ids)
        self._nodes[node_id] = node
        return node_id

    def _release(self, node: "ObservedNode") -> None:
        """Unregisters `node` and all of its descendants, children first."""
        for child in node._children():
            if isinstance(child, ObservedNode):
                self._release(child)
        self._nodes.pop(node._node_id, None)
        node._observer = None
        node._node_id = None

    def _emit_set(self, path: Path, value: Any) -> None:
        try:
            self._handler.on_set(path, value)
        except Exception as e:
            logger.exception(f"Change handler failed for set at {path}: {e}")

    def _emit_delete(self, path: Path) -> None:
        try:
            self._handler.on_delete(path)
        except Exception as e:
            logger.exception(f"Change handler failed for delete at {path}: {e}")


def _wrap(value: Any, observer: Optional[DeepObserver], parent: Optional["ObservedNode"], key: Optional[Key]) -> Any:
    """Builds the wrapper for `value` (recursively), or returns a leaf as-is."""
    if isinstance(value, ObservedNode):
        value = value.to_plain()
    if isinstance(value, Mapping):
        node = ObservedDict(observer, parent, key)
        for k, v in value.items():
            node._data[k] = _wrap(v, observer, node, k)
        return node
    if isinstance(value, (list, tuple)):
        # Tuples become lists; the wire format has no tuple type.
        node = ObservedList(observer, parent, key)
        node._data.extend(_wrap(v, observer, node, i) for i, v in enumerate(value))
        return node
    return value


def _plain(value: Any) -> Any:
    return value.to_plain() if isinstance(value, ObservedNode) else value


class ObservedNode:
    """Behaviour shared by `ObservedDict` and `ObservedList`.

    Not meant to be created directly; wrappers are produced by
    `DeepObserver.observe()` and by assigning values into an observed tree.
    """

    _internal_attrs = ('_data', '_observer', '_parent', '_key', '_node_id')

    def __init__(self, observer: Optional[DeepObserver] = None, parent: Optional["ObservedNode"] = None, key: Optional[Key] = None):
        self._observer = observer
        self._parent = parent
        self._key = key
        self._node_id = observer._register(self) if observer is not None else None

    # --- Bookkeeping ---

    @property
    def path(self) -> Path:
        """The keys leading from the tree root to this node."""
        path: Path = []
        node = self
        while node._parent is not None:
            path.append(node._key)
            node = node._parent
        path.reverse()
        return path

    @property
    def is_attached(self) -> bool:
        """Whether this node is still part of a live observed tree."""
        return self._observer is not None

    def _children(self) -> Iterator[Any]:
        raise NotImplementedError

    def _adopt(self, value: Any, key: Key) -> Any:
        return _wrap(value, self._observer, self, key)

    def _drop(self, value: Any) -> None:
        """Detaches a removed child wrapper from this node and its observer."""
        if not isinstance(value, ObservedNode):
            return
        if self._observer is not None:
            self._observer._release(value)
        value._parent = None
        value._key = None

    def _notify_set(self, key: Optional[Key], value: Any) -> None:
        if self._observer is None:
            return
        path = self.path
        if key is not None:
            path.append(key)
        self._observer._emit_set(path, value)

    def _notify_delete(self, key: Key) -> None:
        if self._observer is None:
            return
        path = self.path
        path.append(key)
        self._observer._emit_delete(path)

    def to_plain(self) -> Any:
        """Returns a detached deep copy built from plain dicts and lists."""
        raise NotImplementedError

    # --- Explicit path API ---

    def _resolve(self, path: Sequence[Key]) -> "ObservedNode":
        node: Any = self
        for depth, segment in enumerate(path):
            if not isinstance(node, ObservedNode):
                raise PathError(path, depth, "parent is not a container")
            child = node._lookup(segment)
            if child is _MISSING:
                raise PathError(path, depth)
            node = child
        if not isinstance(node, ObservedNode):
            raise PathError(path, len(path), "target is not a container")
        return node

    def _lookup(self, key: Key) -> Any:
        raise NotImplementedError

    def get_in(self, path: Sequence[Key], default: Any = None) -> Any:
        """Reads the value at `path` below this node, or `default` if absent."""
        node: Any = self
        for segment in path:
            if not isinstance(node, ObservedNode):
                return default
            node = node._lookup(segment)
            if node is _MISSING:
                return default
        return node

    def set_in(self, path: Sequence[Key], value: Any) -> None:
        """Assigns `value` at `path` below this node.

        Every segment except the last must already exist and be a container.
        For a list target, the last segment may equal the list length, which
        appends.

        Raises:
            PathError: If an intermediate segment is missing or not a container.
            ValueError: If `path` is empty.
        """
        if not path:
            raise ValueError("set_in() needs a non-empty path")
        target = self._resolve(path[:-1])
        key = path[-1]
        if isinstance(target, ObservedList):
            if key == len(target):
                target.append(value)
                return
            try:
                target[key] = value
            except (IndexError, TypeError) as e:
                raise PathError(path, len(path) - 1, str(e)) from e
        else:
            target[key] = value

    def delete_in(self, path: Sequence[Key]) -> None:
        """Deletes the value at `path` below this node. Missing paths are a no-op."""
        if not path:
            raise ValueError("delete_in() needs a non-empty path")
        try:
            target = self._resolve(path[:-1])
        except PathError:
            return
        if target._lookup(path[-1]) is _MISSING:
            return
        del target[path[-1]]


class ObservedDict(ObservedNode, MutableMapping):
    """A mapping node of an observed tree.

    Reads behave like a plain `dict`. Keys can also be accessed as attributes
    (`tree.server.game` is `tree["server"]["game"]`), as long as they do not
    start with an underscore or clash with a method name (`keys`, `path`,
    ...); item syntax always works.
    """

    def __init__(self, observer: Optional[DeepObserver] = None, parent: Optional[ObservedNode] = None, key: Optional[Key] = None):
        self._data: Dict[Key, Any] = {}
        super().__init__(observer, parent, key)

    def _children(self) -> Iterator[Any]:
        return iter(list(self._data.values()))

    def _lookup(self, key: Key) -> Any:
        return self._data.get(key, _MISSING)

    def __getitem__(self, key: Key) -> Any:
        return self._data[key]

    def __setitem__(self, key: Key, value: Any) -> None:
        old = self._data.get(key, _MISSING)
        if value is old and isinstance(value, ObservedNode):
            # Re-assigning a node to its own slot, e.g. after `node.lst += [...]`.
            self._notify_set(key, value)
            return
        stored = self._adopt(value, key)
        if old is not _MISSING:
            self._drop(old)
        self._data[key] = stored
        self._notify_set(key, stored)

    def __delitem__(self, key: Key) -> None:
        if key not in self._data:
            return
        self._drop(self._data[key])
        del self._data[key]
        self._notify_delete(key)

    def __iter__(self) -> Iterator[Key]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def pop(self, key: Key, default: Any = _MISSING) -> Any:
        """Removes `key` and returns its value as plain data."""
        if key not in self._data:
            if default is _MISSING:
                raise KeyError(key)
            return default
        value = _plain(self._data[key])
        del self[key]
        return value

    def popitem(self):
        try:
            key = next(iter(self._data))
        except StopIteration:
            raise KeyError("popitem(): observed dict is empty") from None
        return key, self.pop(key)

    def setdefault(self, key: Key, default: Any = None) -> Any:
        if key not in self._data:
            self[key] = default
        return self._data[key]

    def to_plain(self) -> Dict[Key, Any]:
        return {k: _plain(v) for k, v in self._data.items()}

    def __repr__(self) -> str:
        return f"ObservedDict({self._data!r})"

    # --- Attribute access ---

    def __getattr__(self, name: str) -> Any:
        # Only called when normal lookup fails.
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            return self._data[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no key or attribute '{name}'") from None

    def __setattr__(self, name: str, value: Any) -> None:
        if name in ObservedNode._internal_attrs:
            object.__setattr__(self, name, value)
        elif hasattr(type(self), name):
            # Reading `name` back would return the class attribute, not the key.
            raise AttributeError(f"'{name}' is an attribute of {type(self).__name__}; use tree[{name!r}] instead")
        else:
            self[name] = value

    def __delattr__(self, name: str) -> None:
        if name in ObservedNode._internal_attrs:
            object.__delattr__(self, name)
        elif hasattr(type(self), name):
            raise AttributeError(f"'{name}' is an attribute of {type(self).__name__}; use del tree[{name!r}] instead")
        else:
            del self[name]


class ObservedList(ObservedNode, MutableSequence):
    """A list node of an observed tree (log entries, sample windows, ...)."""

    def __init__(self, observer: Optional[DeepObserver] = None, parent: Optional[ObservedNode] = None, key: Optional[Key] = None):
        self._data: List[Any] = []
        super().__init__(observer, parent, key)

    def _children(self) -> Iterator[Any]:
        return iter(list(self._data))

    def _lookup(self, key: Key) -> Any:
        if not isinstance(key, int):
            return _MISSING
        try:
            return self._data[key]
        except IndexError:
            return _MISSING

    def _reindex(self) -> None:
        for index, item in enumerate(self._data):
            if isinstance(item, ObservedNode):
                item._key = index

    def _normalize(self, index: int) -> int:
        if isinstance(index, slice):
            raise TypeError("Observed lists do not support slice assignment or deletion")
        if not isinstance(index, int):
            raise TypeError(f"observed list indices must be integers, not {type(index).__name__}")
        if index < 0:
            index += len(self._data)
        return index

    def __getitem__(self, index):
        return self._data[index]

    def __setitem__(self, index: int, value: Any) -> None:
        index = self._normalize(index)
        if not 0 <= index < len(self._data):
            raise IndexError("observed list assignment index out of range")
        old = self._data[index]
        if value is old and isinstance(value, ObservedNode):
            self._notify_set(index, value)
            return
        stored = self._adopt(value, index)
        self._drop(old)
        self._data[index] = stored
        self._notify_set(index, stored)

    def __delitem__(self, index: int) -> None:
        index = self._normalize(index)
        if not 0 <= index < len(self._data):
            return
        self._drop(self._data[index])
        del self._data[index]
        self._reindex()
        self._notify_set(None, self)

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ObservedList):
            return self._data == other._data
        if isinstance(other, list):
            return self._data == other
        return NotImplemented

    __hash__ = None

    def insert(self, index: int, value: Any) -> None:
        size = len(self._data)
        index = self._normalize(index)
        index = min(max(index, 0), size)
        self._data.insert(index, self._adopt(value, index))
        self._reindex()
        self._notify_set(None, self)

    def append(self, value: Any) -> None:
        index = len(self._data)
        stored = self._adopt(value, index)
        self._data.append(stored)
        self._notify_set(index, stored)

    def pop(self, index: int = -1) -> Any:
        """Removes the item at `index` and returns it as plain data."""
        if not self._data:
            raise IndexError("pop from empty observed list")
        index = self._normalize(index)
        if not 0 <= index < len(self._data):
            raise IndexError("pop index out of range")
        item = self._data[index]
        value = _plain(item)
        self._drop(item)
        del self._data[index]
        self._reindex()
        self._notify_set(None, self)
        return value

    def clear(self) -> None:
        if not self._data:
            return
        for item in self._data:
            self._drop(item)
        self._data.clear()
        self._notify_set(None, self)

    def reverse(self) -> None:
        self._data.reverse()
        self._reindex()
        self._notify_set(None, self)

    def to_plain(self) -> List[Any]:
        return [_plain(v) for v in self._data]

    def __repr__(self) -> str:
        return f"ObservedList({self._data!r})"
