"""Tests for component normalization and option parsing."""

import sys
import os
import json
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest
from salesforce_mcp.categories.metadata._shared import normalize_components
from salesforce_mcp.errors import ValidationError
from salesforce_mcp.models import ComponentDescriptor, OperationOptions


class TestNormalizeComponents:
    """A single descriptor or a sequence always becomes an ordered list."""

    def test_single_descriptor_becomes_list(self):
        result = normalize_components({'type': 'ApexClass', 'fullName': 'HelloWorld'})
        assert len(result) == 1
        assert result[0].type == 'ApexClass'
        assert result[0].full_name == 'HelloWorld'

    def test_sequence_order_preserved(self):
        items = [
            {'type': 'ApexClass', 'fullName': 'B'},
            {'type': 'ApexClass', 'fullName': 'A'},
            {'type': 'ApexTrigger', 'fullName': 'C'},
        ]
        result = normalize_components(items)
        assert [d.full_name for d in result] == ['B', 'A', 'C']

    def test_empty_sequence_rejected(self):
        with pytest.raises(ValidationError, match='At least one component'):
            normalize_components([])

    def test_missing_full_name_rejected(self):
        with pytest.raises(ValidationError, match=r"components\[1\] is missing 'fullName'"):
            normalize_components([
                {'type': 'ApexClass', 'fullName': 'A'},
                {'type': 'ApexClass'},
            ])

    def test_missing_type_rejected(self):
        with pytest.raises(ValidationError, match="missing 'type'"):
            normalize_components({'fullName': 'A'})

    def test_blank_type_rejected(self):
        with pytest.raises(ValidationError):
            normalize_components({'type': '  ', 'fullName': 'A'})

    def test_duplicates_rejected(self):
        with pytest.raises(ValidationError, match='duplicates ApexClass:A'):
            normalize_components([
                {'type': 'ApexClass', 'fullName': 'A'},
                {'type': 'ApexClass', 'fullName': 'A'},
            ])

    def test_same_name_different_type_allowed(self):
        result = normalize_components([
            {'type': 'ApexClass', 'fullName': 'A'},
            {'type': 'ApexTrigger', 'fullName': 'A'},
        ])
        assert len(result) == 2

    def test_json_string_accepted(self):
        raw = json.dumps([{'type': 'ApexClass', 'fullName': 'A', 'metadata': {'body': 'x'}}])
        result = normalize_components(raw)
        assert result[0].metadata == {'body': 'x'}

    def test_invalid_json_rejected(self):
        with pytest.raises(ValidationError, match='not valid JSON'):
            normalize_components('{not json')

    def test_descriptor_instance_accepted(self):
        descriptor = ComponentDescriptor(type='ApexClass', fullName='A')
        assert normalize_components(descriptor)[0].key == ('ApexClass', 'A')

    def test_scalar_rejected(self):
        with pytest.raises(ValidationError, match='must be an object or an array'):
            normalize_components(42)


class TestOperationOptions:
    """Options arrive as dicts, JSON strings or nothing."""

    def test_defaults(self):
        opts = OperationOptions.parse(None)
        assert opts.check_only is False
        assert opts.rollback_on_error is False
        assert opts.include_body is False
        assert opts.test_level == 'NoTestRun'

    def test_camel_case_keys(self):
        opts = OperationOptions.parse({'checkOnly': True, 'savePath': './out', 'apiVersion': '60.0'})
        assert opts.check_only is True
        assert opts.save_path == './out'
        assert opts.api_version == '60.0'

    def test_json_string(self):
        opts = OperationOptions.parse('{"rollbackOnError": true}')
        assert opts.rollback_on_error is True

    def test_unknown_keys_ignored(self):
        opts = OperationOptions.parse({'somethingElse': 1})
        assert opts.check_only is False

    def test_bad_type_rejected(self):
        with pytest.raises(ValidationError, match='Invalid options'):
            OperationOptions.parse({'timeout': 'soon'})

    def test_non_object_rejected(self):
        with pytest.raises(ValidationError, match='must be an object'):
            OperationOptions.parse('[1, 2]')
