"""
Guard evaluation: restricted expressions against a built context.

Missing variables resolve to UNDEFINED, which fails every comparison
instead of raising.  explain() names the first failing conjunct.
"""

from datetime import UTC, datetime

import pytest
from hypothesis import given
from hypothesis import strategies as st

from govflow_engines.guards import (
    UNDEFINED,
    build_context,
    evaluate,
    evaluate_value,
    explain,
)


@pytest.fixture
def context():
    return build_context(
        data={
            "fee_paid": True,
            "property": {"plot_no": "P-17", "area": 240},
            "owners": ["A", "B"],
            "notes": "",
        },
        application={"state": "PENDING_AT_CLERK", "query_count": 1},
        actor_id="clerk-1",
        actor_roles=["CLERK"],
        actor_type="OFFICER",
        lookup={"dues_outstanding": 0},
        authority_id="MC-01",
        now=datetime(2026, 3, 2, 9, tzinfo=UTC),
    )


class TestComparisons:

    def test_nested_field_access(self, context):
        assert evaluate("data.property.plot_no == 'P-17'", context)
        assert evaluate("data.property['area'] > 200", context)
        assert evaluate("data.owners[1] == 'B'", context)

    def test_boolean_logic(self, context):
        assert evaluate("data.fee_paid and lookup.dues_outstanding == 0", context)
        assert evaluate("not data.notes or data.fee_paid", context)
        assert not evaluate("data.fee_paid and application.query_count > 1", context)

    def test_membership_and_arithmetic(self, context):
        assert evaluate("'A' in data.owners", context)
        assert evaluate("data.property.area * 2 - 80 == 400", context)
        assert evaluate("application.state not in ['APPROVED', 'REJECTED']", context)

    def test_chained_comparison(self, context):
        assert evaluate("0 <= application.query_count < 3", context)

    def test_ternary(self, context):
        assert evaluate("(1 if data.fee_paid else 0) == 1", context)

    def test_bare_scalars(self, context):
        assert evaluate("authority_id == 'MC-01'", context)


class TestFunctions:

    def test_has_role(self, context):
        assert evaluate("has_role('CLERK')", context)
        assert not evaluate("has_role('ACCOUNT_OFFICER')", context)

    def test_is_empty(self, context):
        assert evaluate("is_empty(data.notes)", context)
        assert evaluate("is_empty(data.missing)", context)
        assert not evaluate("is_empty(data.owners)", context)

    def test_len_min_max_abs(self, context):
        assert evaluate("len(data.owners) == 2", context)
        assert evaluate("min(3, 1, 2) == 1", context)
        assert evaluate("max(data.owners) == 'B'", context)
        assert evaluate("abs(-4) == 4", context)

    def test_days_between(self, context):
        assert evaluate_value("days_between('2026-03-01', now)", context) == 1


class TestUndefined:

    def test_missing_path_is_undefined(self, context):
        assert evaluate_value("data.nothing.here", context) is UNDEFINED

    def test_undefined_fails_every_comparison(self, context):
        assert not evaluate("data.missing == None", context)
        assert not evaluate("data.missing != 1", context)
        assert not evaluate("data.missing < 1", context)

    def test_is_none_treats_undefined_as_none(self, context):
        assert evaluate("data.missing is None", context)
        assert not evaluate("data.missing is not None", context)

    def test_arithmetic_on_undefined_propagates(self, context):
        assert evaluate_value("data.missing + 1", context) is UNDEFINED
        assert evaluate_value("len(data.missing)", context) is UNDEFINED

    def test_type_mismatch_is_false_not_error(self, context):
        assert not evaluate("data.property.plot_no > 5", context)
        assert evaluate_value("data.property.plot_no * 'x'", context) is UNDEFINED

    def test_division_by_zero_is_undefined(self, context):
        assert evaluate_value("data.property.area / 0", context) is UNDEFINED


class TestExplain:

    def test_passing_guard(self, context):
        outcome = explain(rule_expression="data.fee_paid", context=context)
        assert outcome.passed
        assert outcome.failing_condition is None

    def test_first_failing_conjunct_is_reported(self, context):
        outcome = explain(
            rule_expression="data.fee_paid and lookup.dues_outstanding > 0 and has_role('X')",
            context=context,
        )
        assert not outcome.passed
        assert outcome.failing_condition == "lookup.dues_outstanding > 0"

    def test_non_conjunction_reports_whole_expression(self, context):
        outcome = explain(rule_expression="has_role('X') or has_role('Y')", context=context)
        assert outcome.failing_condition == "has_role('X') or has_role('Y')"

    def test_message_replaces_source_text(self, context):
        outcome = explain(
            rule_expression="lookup.dues_outstanding > 0",
            context=context,
            message="Dues must be outstanding",
        )
        assert outcome.failing_condition == "Dues must be outstanding"


class TestRejectedSyntax:

    @pytest.mark.parametrize("expression", [
        "data.__class__",
        "open('x')",
        "data.owners.pop()",
        "[x for x in data.owners]",
    ])
    def test_unsupported_syntax_raises(self, expression, context):
        with pytest.raises(ValueError):
            evaluate(expression, context)

    def test_syntax_error_raises(self, context):
        with pytest.raises(ValueError):
            evaluate("data.fee_paid and", context)


class TestDeterminism:

    @given(
        amount=st.one_of(st.integers(-10**6, 10**6), st.none(), st.text(max_size=5)),
        threshold=st.integers(-100, 100),
    )
    def test_evaluation_is_pure(self, amount, threshold):
        ctx = build_context(data={"amount": amount})
        expression = f"data.amount > {threshold}"
        first = evaluate(expression, ctx)
        assert evaluate(expression, ctx) == first
        assert ctx["data"] == {"amount": amount}

    @given(value=st.one_of(st.integers(), st.text(), st.booleans(), st.none()))
    def test_never_raises_on_missing_or_mistyped_values(self, value):
        ctx = build_context(data={"value": value})
        for expression in (
            "data.value > 0",
            "data.value + 1 == 2",
            "len(data.value) > 0",
            "data.other.deep == data.value",
        ):
            assert evaluate(expression, ctx) in (True, False)
