"""Tests for outcome aggregation."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest
from salesforce_mcp.categories.metadata.aggregate import aggregate
from salesforce_mcp.errors import AggregationError
from salesforce_mcp.models import ComponentDescriptor, ComponentOutcome, OutcomeKind


def descriptor(name, type_='ApexClass'):
    return ComponentDescriptor(type=type_, fullName=name)


class TestCounts:

    def test_all_success(self):
        outcomes = [ComponentOutcome.ok(descriptor('A')), ComponentOutcome.ok(descriptor('B'))]
        result = aggregate(outcomes, 'deploy', '61.0', 2)
        assert result.success is True
        assert (result.total, result.succeeded, result.failed) == (2, 2, 0)
        assert result.errors == []

    def test_partial_failure(self):
        outcomes = [
            ComponentOutcome.ok(descriptor('A')),
            ComponentOutcome.failed(descriptor('B'), OutcomeKind.NOT_FOUND, 'missing'),
            ComponentOutcome.ok(descriptor('C')),
        ]
        result = aggregate(outcomes, 'retrieve', '61.0', 3)
        assert result.success is False
        assert result.succeeded + result.failed == result.total == len(result.results) == 3
        assert result.errors == [
            {'type': 'ApexClass', 'component': 'B', 'error': 'missing', 'errorKind': 'NotFound'}
        ]

    def test_count_labels_per_operation(self):
        outcomes = [ComponentOutcome.ok(descriptor('A'))]
        deployed = aggregate(outcomes, 'deploy', '61.0').to_dict()
        retrieved = aggregate(outcomes, 'retrieve', '61.0').to_dict()
        assert deployed['componentsDeployed'] == 1
        assert retrieved['componentsRetrieved'] == 1
        assert deployed['componentsTotal'] == retrieved['componentsTotal'] == 1
        assert 'rolledBack' not in deployed

    def test_results_keep_input_order(self):
        names = ['Z', 'A', 'M']
        result = aggregate([ComponentOutcome.ok(descriptor(n)) for n in names], 'deploy', '61.0')
        assert [r['component'] for r in result.to_dict()['results']] == names


class TestRollback:

    def test_rollback_failure_marks_rolled_back(self):
        outcomes = [
            ComponentOutcome.ok(descriptor('A')),
            ComponentOutcome.failed(descriptor('B'), OutcomeKind.VALIDATION_ERROR, 'bad'),
        ]
        result = aggregate(outcomes, 'deploy', '61.0', 2, rollback_on_error=True)
        assert result.success is False
        assert result.rolled_back is True
        assert result.to_dict()['rolledBack'] is True

    def test_rollback_without_failure_not_flagged(self):
        result = aggregate([ComponentOutcome.ok(descriptor('A'))], 'deploy', '61.0', 1, rollback_on_error=True)
        assert result.success is True
        assert result.rolled_back is None


class TestInvariants:

    def test_expected_total_mismatch(self):
        with pytest.raises(AggregationError):
            aggregate([ComponentOutcome.ok(descriptor('A'))], 'deploy', '61.0', 2)

    def test_failure_tagged_success_rejected(self):
        bad = ComponentOutcome(type='ApexClass', component='A', success=False)
        with pytest.raises(AggregationError):
            aggregate([bad], 'deploy', '61.0')

    def test_success_tagged_failure_rejected(self):
        bad = ComponentOutcome(type='ApexClass', component='A', success=True, kind=OutcomeKind.NOT_FOUND)
        with pytest.raises(AggregationError):
            aggregate([bad], 'deploy', '61.0')

    def test_extra_fields_pass_through(self):
        result = aggregate(
            [ComponentOutcome.ok(descriptor('A'))], 'deploy', '61.0',
            transport='archive', job_id='0Af1', check_only=True,
        )
        data = result.to_dict()
        assert data['transport'] == 'archive'
        assert data['jobId'] == '0Af1'
        assert data['checkOnly'] is True
