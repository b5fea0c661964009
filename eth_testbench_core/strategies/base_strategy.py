import random
from typing import Any, Iterator, List


class Strategy:
    """
    Abstract base class for fuzz value strategies. One strategy produces
    values of one ABI type, in the Python form eth-abi encodes.
    """
    def __init__(self, abi_type: str):
        self.abi_type = abi_type

    def boundary_values(self) -> List[Any]:
        """
        Values at the edges of the type's domain (zero, one, maximum and
        friends), tried before any random draw.

        :return: A list of values, most likely to expose bugs first.
        """
        raise NotImplementedError("Subclasses must implement the boundary_values method.")

    def draw(self, rng: random.Random) -> Any:
        """
        Draws one value. Must depend only on the state of ``rng`` so a case
        can be replayed from its seed.

        :param rng: The per-case random generator.
        :return: A value of this strategy's type.
        """
        raise NotImplementedError("Subclasses must implement the draw method.")

    def shrink(self, value: Any) -> Iterator[Any]:
        """
        Yields strictly simpler candidates for ``value``, simplest first.
        Yields nothing when ``value`` is already minimal.

        :param value: The value to simplify.
        """
        raise NotImplementedError("Subclasses must implement the shrink method.")

    def to_json(self, value: Any) -> Any:
        """Converts a value into a JSON-serialisable form."""
        return value

    def from_json(self, data: Any) -> Any:
        """Inverse of ``to_json``."""
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.abi_type!r})"
