"""
Token Mixer Tests.

============================================================
PURPOSE
============================================================
Round-robin interleaving of per-chain lists.
============================================================
"""

import math

import pytest

from market_data.mixer import group_by, mix, mix_tokens


class TestMix:
    """Tests for mix()."""
    
    def test_two_chains_alternate(self):
        """Test 7+7 items with limit 10 alternate 5 and 5."""
        eth = [f"e{i}" for i in range(7)]
        bsc = [f"b{i}" for i in range(7)]
        
        result = mix({1: eth, 56: bsc}, limit=10)
        
        assert result == ["e0", "b0", "e1", "b1", "e2", "b2", "e3", "b3", "e4", "b4"]
    
    def test_exhausted_chain_drops_out(self):
        """Test shorter lists stop contributing when empty."""
        assert mix({1: ["a1", "a2", "a3"], 56: ["b1"]}, limit=4) == ["a1", "b1", "a2", "a3"]
    
    def test_insertion_order_decides_first(self):
        """Test the first chain in the mapping leads each round."""
        assert mix({56: ["b"], 1: ["a"]}, limit=2) == ["b", "a"]
    
    def test_limit_zero(self):
        """Test zero limit yields nothing."""
        assert mix({1: ["a"]}, limit=0) == []
    
    def test_all_empty(self):
        """Test empty inputs yield nothing."""
        assert mix({1: [], 56: []}, limit=5) == []
    
    def test_fewer_items_than_limit(self):
        """Test output is all items when the limit is not reached."""
        assert sorted(mix({1: ["a"], 56: ["b", "c"]}, limit=10)) == ["a", "b", "c"]
    
    @pytest.mark.parametrize("sizes,limit", [
        ((7, 7), 10),
        ((10, 10, 10), 7),
        ((5, 20), 12),
        ((1, 1, 1, 1), 3),
    ])
    def test_fair_share_bound(self, sizes, limit):
        """Test no chain exceeds ceil(limit/k) while every chain still has items."""
        lists = {c: [(c, i) for i in range(n)] for c, n in enumerate(sizes)}
        
        result = mix(lists, limit)
        
        assert len(result) == min(limit, sum(sizes))
        if all(n >= math.ceil(limit / len(sizes)) for n in sizes):
            for chain in lists:
                count = sum(1 for c, _ in result if c == chain)
                assert count <= math.ceil(limit / len(sizes))


class TestGroupBy:
    """Tests for grouping helpers."""
    
    def test_group_by_with_order(self):
        """Test explicit order is kept even for empty groups."""
        grouped = group_by([3, 4, 5], key=lambda n: n % 2, order=[0, 1, 2])
        
        assert list(grouped) == [0, 1, 2]
        assert grouped[1] == [3, 5]
        assert grouped[2] == []
    
    def test_mix_tokens(self, token_factory):
        """Test tokens are grouped by chain then mixed."""
        tokens = [token_factory(1, i) for i in range(3)] + [token_factory(56, i) for i in range(3)]
        
        result = mix_tokens(tokens, limit=4, chain_order=[56, 1])
        
        assert [t.chain_id for t in result] == [56, 1, 56, 1]
