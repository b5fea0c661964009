import random

import pytest
from hypothesis import given, settings, strategies as st

from eth_testbench_core.errors import DiscoveryError
from eth_testbench_core.strategies import (
    AddressStrategy,
    ArrayStrategy,
    BytesStrategy,
    FixedBytesStrategy,
    IntStrategy,
    TupleStrategy,
    UintStrategy,
    shrink_magnitude,
    strategy_for,
)

BIT_WIDTHS = st.sampled_from([8, 16, 32, 64, 128, 160, 256])
SEEDS = st.integers(min_value=0, max_value=2**64 - 1)


class TestDraws:
    @given(bits=BIT_WIDTHS, seed=SEEDS)
    @settings(max_examples=100)
    def test_uint_draws_stay_in_range(self, bits, seed):
        strategy = UintStrategy(bits)
        rng = random.Random(seed)
        for _ in range(5):
            assert 0 <= strategy.draw(rng) <= 2**bits - 1

    @given(bits=BIT_WIDTHS, seed=SEEDS)
    @settings(max_examples=100)
    def test_int_draws_stay_in_range(self, bits, seed):
        strategy = IntStrategy(bits)
        rng = random.Random(seed)
        for _ in range(5):
            assert -(2**(bits - 1)) <= strategy.draw(rng) <= 2**(bits - 1) - 1

    @given(seed=SEEDS)
    @settings(max_examples=50)
    def test_draws_depend_only_on_the_seed(self, seed):
        strategy = strategy_for("(address,uint256,bytes)[]")
        assert strategy.draw(random.Random(seed)) == strategy.draw(random.Random(seed))

    def test_dynamic_bytes_respect_max_length(self):
        strategy = BytesStrategy(max_length=4)
        rng = random.Random(1)
        assert all(len(strategy.draw(rng)) <= 4 for _ in range(50))

    def test_boundary_values_cover_the_edges(self):
        assert UintStrategy(8).boundary_values() == [0, 1, 255, 254]
        assert set(IntStrategy(8).boundary_values()) == {0, -1, 1, -128, 127}
        assert FixedBytesStrategy(2).boundary_values() == [b"\x00\x00", b"\xff\xff"]


class TestShrinking:
    @given(value=st.integers(min_value=0, max_value=2**256 - 1))
    @settings(max_examples=100)
    def test_magnitude_candidates_are_smaller(self, value):
        candidates = list(shrink_magnitude(value))
        assert all(0 <= c < value for c in candidates)
        assert len(candidates) == len(set(candidates))
        if value:
            assert candidates[0] == 0

    @given(value=st.integers(min_value=-(2**255), max_value=2**255 - 1))
    @settings(max_examples=100)
    def test_int_candidates_are_no_larger(self, value):
        for candidate in IntStrategy(256).shrink(value):
            assert candidate != value
            assert abs(candidate) <= abs(value)

    def test_minimal_values_do_not_shrink(self):
        assert list(UintStrategy().shrink(0)) == []
        assert list(IntStrategy().shrink(0)) == []
        assert list(BytesStrategy().shrink(b"")) == []

    def test_address_candidates_are_checksummed_and_smaller(self):
        strategy = AddressStrategy()
        value = strategy.draw(random.Random(3))
        for candidate in strategy.shrink(value):
            assert candidate == strategy.from_json(candidate.lower())
            assert int(candidate, 16) < int(value, 16)

    def test_fixed_array_shrinking_keeps_the_length(self):
        strategy = ArrayStrategy(UintStrategy(8), length=3)
        assert all(len(candidate) == 3 for candidate in strategy.shrink([5, 6, 7]))

    def test_dynamic_array_tries_shorter_first(self):
        strategy = ArrayStrategy(UintStrategy(8))
        assert next(iter(strategy.shrink([5, 6, 7]))) == []


class TestStrategyFor:
    def test_nested_tuple_array(self):
        strategy = strategy_for("(address,uint256)[2]")
        assert isinstance(strategy, ArrayStrategy)
        assert strategy.length == 2
        assert isinstance(strategy.element, TupleStrategy)
        assert [c.abi_type for c in strategy.element.components] == ["address", "uint256"]

        value = strategy.draw(random.Random(0))
        assert len(value) == 2
        assert all(isinstance(item, tuple) and len(item) == 2 for item in value)

    def test_aliases_are_normalised(self):
        assert strategy_for("uint").abi_type == "uint256"

    def test_json_form_round_trips_for_bytes(self):
        strategy = strategy_for("bytes4[]")
        value = [b"\x01\x02\x03\x04"]
        assert strategy.from_json(strategy.to_json(value)) == value

    @pytest.mark.parametrize("abi_type", ["fixed128x18", "ufixed128x18", "function", "uint7", "not a type"])
    def test_unsupported_types_raise(self, abi_type):
        with pytest.raises(DiscoveryError):
            strategy_for(abi_type)
