"""Tests for tool-call id reconciliation and signature backups."""

import re

from parley.reconcile.ids import IdReconciler, canonicalize, detect_format
from parley.reconcile.signatures import SignatureStore, has_signatures, sanitize_for_export
from parley.types import ProviderFormat


class TestIdHelpers:
    def test_canonicalize(self):
        assert canonicalize("call_abc") == "abc"
        assert canonicalize("toolu_abc") == "abc"
        assert canonicalize("gemini_abc") == "abc"
        assert canonicalize("xyz") == "xyz"

    def test_detect_format(self):
        assert detect_format("toolu_1") is ProviderFormat.CLAUDE
        assert detect_format("other") is None


class TestIdReconciler:
    def test_mint_shape(self):
        ids = IdReconciler(clock=lambda: 1.5)
        assert re.fullmatch(r"call_1500_1_[a-z0-9]{6}", ids.mint("openai"))
        assert re.fullmatch(r"toolu_1500_2_[a-z0-9]{6}", ids.mint(ProviderFormat.CLAUDE))

    def test_missing_id_minted(self):
        ids = IdReconciler()
        assert ids.get_or_create_mapped_id(None, "gemini").startswith("gemini_")
        assert ids.size == 0

    def test_mapping_is_idempotent(self):
        ids = IdReconciler()
        openai_id = ids.get_or_create_mapped_id("toolu_abc", ProviderFormat.OPENAI)
        assert openai_id.startswith("call_")
        assert ids.get_or_create_mapped_id("toolu_abc", ProviderFormat.OPENAI) == openai_id
        assert ids.get_or_create_mapped_id("toolu_abc", ProviderFormat.CLAUDE) == "toolu_abc"
        # any sibling resolves to the same entry
        assert ids.get_or_create_mapped_id(openai_id, ProviderFormat.CLAUDE) == "toolu_abc"
        assert ids.size == 1

    def test_unprefixed_id_kept_as_openai(self):
        ids = IdReconciler()
        assert ids.get_or_create_mapped_id("xyz", "openai") == "xyz"
        assert ids.resolve("xyz").canonical == "xyz"

    def test_same_canonical_aliased(self):
        ids = IdReconciler()
        ids.get_or_create_mapped_id("call_abc", "openai")
        ids.get_or_create_mapped_id("toolu_abc", "openai")
        assert ids.resolve("toolu_abc") is ids.resolve("call_abc")
        assert ids.size == 1

    def test_lru_eviction_spares_touched(self):
        ids = IdReconciler(max_mappings=10, evict_ratio=0.1)
        for i in range(10):
            ids.get_or_create_mapped_id(f"a{i}", "openai")
        evicted = ids.resolve("a1")
        ids.get_or_create_mapped_id("a0", "claude")  # touch
        ids.get_or_create_mapped_id("a10", "openai")

        assert ids.size == 10
        assert ids.resolve("a0") is not None
        assert ids.resolve("a1") is None
        for sibling in evicted.siblings():
            assert ids.resolve(sibling) is None

    def test_clear(self):
        ids = IdReconciler(clock=lambda: 0.0)
        ids.get_or_create_mapped_id("call_x", "claude")
        ids.clear()
        assert ids.size == 0
        assert ids.resolve("call_x") is None
        assert ids.mint("openai").startswith("call_0_1_")


def _messages():
    return [
        {"role": "user", "content": "hi"},
        {
            "role": "assistant",
            "tool_calls": [{"id": "c1", "_thoughtSignature": "sigA"}],
            "thoughtSignature": "sigB",
        },
        {"role": "assistant", "content": "ok", "thinkingSignature": "sigC"},
    ]


class TestSignatureStore:
    def test_extract(self):
        msgs = _messages()
        assert SignatureStore.extract(msgs[1]) == "sigA"
        assert SignatureStore.extract(msgs[1], tool_call_index=5) == "sigB"
        assert SignatureStore.extract(msgs[2]) == "sigC"
        assert SignatureStore.extract({}) is None

    def test_clear_and_restore_round_trip(self):
        store = SignatureStore()
        msgs = _messages()
        assert store.clear(msgs, 1) == 3
        assert not has_signatures(msgs)
        assert store.has_backup(1)

        assert store.restore(msgs, 1) == 3
        assert msgs == _messages()
        # the backup is consumed
        assert not store.has_backup(1)
        assert store.restore(msgs, 1) == 0

    def test_clear_without_backup(self):
        store = SignatureStore()
        msgs = _messages()
        assert store.clear(msgs, 0, backup=False) == 3
        assert store.restore(msgs, 0) == 0

    def test_new_clear_replaces_backup(self):
        store = SignatureStore()
        msgs = _messages()
        store.clear(msgs, 1)
        msgs[2]["thinkingSignature"] = "sigD"
        store.clear(msgs, 1)

        assert store.restore(msgs, 1) == 1
        assert msgs[2]["thinkingSignature"] == "sigD"
        assert "thoughtSignature" not in msgs[1]

    def test_restore_skips_missing_messages(self):
        store = SignatureStore()
        msgs = _messages()
        store.clear(msgs, 1)
        assert store.restore(msgs[:2], 1) == 2

    def test_sanitize_for_export(self):
        msg = _messages()[1]
        clean = sanitize_for_export(msg)
        assert clean["tool_calls"] == [{"id": "c1"}]
        assert msg["tool_calls"][0]["_thoughtSignature"] == "sigA"
