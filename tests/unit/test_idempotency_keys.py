"""Idempotency keys for dispatched actions."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from govflow_kernel.utils.idempotency import (
    generate_idempotency_key,
    parse_idempotency_key,
)

identifiers = st.text(
    alphabet=st.characters(whitelist_categories=("Lu", "Ll", "Nd"), whitelist_characters="_"),
    min_size=1,
    max_size=30,
)


class TestIdempotencyKeys:

    def test_format(self):
        key = generate_idempotency_key("NO_DUE_CERTIFICATE-2026-000001", "AO_APPROVE", "certificate", 7)
        assert key == "NO_DUE_CERTIFICATE-2026-000001:AO_APPROVE:certificate:7"

    def test_occurrence_distinguishes_revisits(self):
        first = generate_idempotency_key("ARN-1", "CLERK_QUERY", "query_notice", 3)
        second = generate_idempotency_key("ARN-1", "CLERK_QUERY", "query_notice", 5)
        assert first != second

    def test_arn_may_contain_colons(self):
        key = generate_idempotency_key("urn:mc:0001", "SUBMIT", "acknowledgement", 2)
        assert parse_idempotency_key(key) == ("urn:mc:0001", "SUBMIT", "acknowledgement", 2)

    @pytest.mark.parametrize("transition_id,action_id", [
        ("AO:APPROVE", "certificate"),
        ("AO_APPROVE", "cert:pdf"),
    ])
    def test_colon_in_identifiers_rejected(self, transition_id, action_id):
        with pytest.raises(ValueError):
            generate_idempotency_key("ARN-1", transition_id, action_id, 1)

    @pytest.mark.parametrize("key", ["", "ARN-1:SUBMIT", "ARN-1:SUBMIT:ack:two"])
    def test_malformed_keys_rejected(self, key):
        with pytest.raises(ValueError, match="Invalid idempotency key"):
            parse_idempotency_key(key)

    @given(
        arn=st.text(min_size=1, max_size=40),
        transition_id=identifiers,
        action_id=identifiers,
        occurrence=st.integers(min_value=0, max_value=10**9),
    )
    def test_parse_inverts_generate(self, arn, transition_id, action_id, occurrence):
        key = generate_idempotency_key(arn, transition_id, action_id, occurrence)
        assert parse_idempotency_key(key) == (arn, transition_id, action_id, occurrence)
