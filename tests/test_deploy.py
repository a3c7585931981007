"""Tests for metadata deploy (sync and archive paths)."""

import sys
import os
import io
import zipfile
from unittest.mock import MagicMock
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest
from salesforce_mcp.categories.metadata import check_deploy_status, deploy_components, normalize_components
from salesforce_mcp.categories.metadata.deploy import outcomes_from_deploy_result
from salesforce_mcp.config import Settings
from salesforce_mcp.errors import UpstreamError, ValidationError
from salesforce_mcp.models import OperationOptions
from salesforce_mcp.polling import Deadline


def make_client():
    client = MagicMock()
    client.api_version.side_effect = lambda override=None: override or '61.0'
    client.deploy_archive.return_value = {'id': '0Af000000000001', 'deployResult': {'status': 'Pending'}}
    return client


def apex(name, body=None):
    return {
        'type': 'ApexClass',
        'fullName': name,
        'metadata': {'body': body or f'public class {name} {{}}'},
    }


def archive_names(client):
    zip_bytes = client.deploy_archive.call_args.args[0]
    with zipfile.ZipFile(io.BytesIO(zip_bytes)) as zf:
        return set(zf.namelist())


def deploy_result(status, successes=(), failures=(), **extra):
    return {
        'id': '0Af000000000001',
        'status': status,
        'done': status in ('Succeeded', 'SucceededPartial', 'Failed', 'Canceled'),
        'details': {
            'componentSuccesses': list(successes),
            'componentFailures': list(failures),
        },
        **extra,
    }


class TestSyncDeploy:

    def test_creates_and_updates(self):
        client = make_client()

        def lookup(soql, tooling=False, api_version=None):
            return [{'Id': '01pExisting'}] if "'Existing'" in soql else []

        client.query_all.side_effect = lookup
        client.tooling_create.return_value = {'id': '01pNew', 'success': True}

        components = normalize_components([apex('NewClass'), apex('Existing')])
        result = deploy_components(client, components, OperationOptions(), Settings())

        assert result.success is True
        assert result.transport == 'sync'
        assert (result.total, result.succeeded, result.failed) == (2, 2, 0)
        assert result.results[0].id == '01pNew'
        assert result.results[1].id == '01pExisting'

        sobject, payload, version = client.tooling_create.call_args.args
        assert sobject == 'ApexClass'
        assert payload == {'Body': 'public class NewClass {}', 'Name': 'NewClass'}
        client.tooling_update.assert_called_once_with(
            'ApexClass', '01pExisting', {'Body': 'public class Existing {}'}, '61.0'
        )
        client.deploy_archive.assert_not_called()

    def test_failure_does_not_abort_siblings(self):
        client = make_client()
        client.query_all.return_value = []

        def create(sobject, payload, api_version=None):
            if payload['Name'] == 'Bad':
                raise UpstreamError("Unexpected token 'x'", status_code=400, error_code='COMPILE_ERROR')
            return {'id': f"01p{payload['Name']}"}

        client.tooling_create.side_effect = create
        components = normalize_components([apex('Good'), apex('Bad'), apex('AlsoGood')])
        result = deploy_components(client, components, OperationOptions(), Settings())

        assert result.succeeded == 2
        assert result.failed == 1
        assert result.results[1].kind.value == 'ValidationError'
        assert "Unexpected token" in result.errors[0]['error']
        assert result.to_dict()['componentsDeployed'] == 2

    def test_server_error_is_upstream(self):
        client = make_client()
        client.query_all.side_effect = UpstreamError('HTTP 503', status_code=503)
        result = deploy_components(client, normalize_components(apex('A')), OperationOptions(), Settings())
        assert result.results[0].kind.value == 'UpstreamError'

    def test_missing_body_is_validation_error(self):
        client = make_client()
        components = normalize_components([
            {'type': 'ApexClass', 'fullName': 'NoBody', 'metadata': {'apiVersion': '61.0'}},
            apex('Fine'),
        ])
        client.query_all.return_value = []
        client.tooling_create.return_value = {'id': '01pFine'}
        result = deploy_components(client, components, OperationOptions(), Settings())

        assert result.results[0].kind.value == 'ValidationError'
        assert result.results[1].success is True
        assert client.tooling_create.call_count == 1


class TestArchiveDeploy:

    def test_check_only_sends_validate_flag(self):
        client = make_client()
        client.deploy_status.return_value = deploy_result(
            'Succeeded',
            successes=[
                {'componentType': 'ApexClass', 'fullName': 'HelloWorld', 'created': True, 'fileName': 'classes/HelloWorld.cls'},
                {'componentType': '', 'fullName': 'package.xml', 'fileName': 'package.xml'},
            ],
            checkOnly=True,
        )
        components = normalize_components(apex('HelloWorld'))
        result = deploy_components(client, components, OperationOptions(checkOnly=True), Settings())

        deploy_options = client.deploy_archive.call_args.args[1]
        assert deploy_options['checkOnly'] is True
        assert deploy_options['singlePackage'] is True
        client.tooling_create.assert_not_called()
        client.tooling_update.assert_not_called()

        assert archive_names(client) == {
            'package.xml', 'classes/HelloWorld.cls', 'classes/HelloWorld.cls-meta.xml'
        }
        data = result.to_dict()
        assert data['checkOnly'] is True
        assert data['transport'] == 'archive'
        assert data['jobId'] == '0Af000000000001'
        assert data['success'] is True

    def test_rollback_failure_fails_batch(self):
        client = make_client()
        client.deploy_status.return_value = deploy_result(
            'Failed',
            successes=[{'componentType': 'ApexClass', 'fullName': 'First'}],
            failures=[{
                'componentType': 'ApexClass', 'fullName': 'Second',
                'problem': 'Variable does not exist: x', 'lineNumber': 3, 'columnNumber': 9,
            }],
        )
        components = normalize_components([apex('First'), apex('Second')])
        result = deploy_components(client, components, OperationOptions(rollbackOnError=True), Settings())

        assert client.deploy_archive.call_args.args[1]['rollbackOnError'] is True
        assert result.success is False
        assert result.rolled_back is True
        assert result.failed == 1
        assert result.errors[0]['error'] == 'Line 3, Col 9: Variable does not exist: x'

    def test_rollback_local_validation_failure_skips_submit(self):
        client = make_client()
        components = normalize_components([
            apex('Good'),
            {'type': 'ApexClass', 'fullName': 'Empty'},
        ])
        result = deploy_components(client, components, OperationOptions(rollbackOnError=True), Settings())

        client.deploy_archive.assert_not_called()
        assert result.success is False
        assert result.failed == 2
        assert 'not processed' in result.results[0].error

    def test_unprocessed_component_reported(self):
        client = make_client()
        client.deploy_status.return_value = deploy_result(
            'Failed',
            failures=[{'componentType': 'ApexClass', 'fullName': 'First', 'problem': 'bad'}],
            errorMessage='Deployment aborted',
        )
        components = normalize_components([apex('First'), apex('Second')])
        result = deploy_components(client, components, OperationOptions(checkOnly=True), Settings())

        assert result.total == 2
        assert result.failed == 2
        assert 'not processed' in result.results[1].error
        assert 'Deployment aborted' in result.results[1].error

    def test_large_batch_uses_archive(self):
        client = make_client()
        names = [f'Class{i}' for i in range(12)]
        client.deploy_status.return_value = deploy_result(
            'Succeeded',
            successes=[{'componentType': 'ApexClass', 'fullName': n} for n in names],
        )
        result = deploy_components(client, normalize_components([apex(n) for n in names]), OperationOptions(), Settings())

        assert result.transport == 'archive'
        assert result.succeeded == 12
        client.tooling_create.assert_not_called()

    def test_timeout_marks_every_component(self):
        client = make_client()
        client.deploy_status.return_value = {'id': '0Af000000000001', 'status': 'InProgress', 'done': False}
        components = normalize_components([apex('A'), apex('B')])
        result = deploy_components(
            client, components, OperationOptions(checkOnly=True), Settings(), deadline=Deadline(0)
        )

        assert result.timed_out is True
        assert result.job_id == '0Af000000000001'
        assert result.failed == 2
        assert all(r.kind.value == 'DeployTimeoutError' for r in result.results)
        assert result.to_dict()['timedOut'] is True

    def test_status_call_failure_keeps_job_id(self):
        client = make_client()
        client.deploy_status.side_effect = UpstreamError('HTTP 503', status_code=503)
        components = normalize_components([apex('A'), apex('B')])
        result = deploy_components(client, components, OperationOptions(checkOnly=True), Settings())

        assert result.job_id == '0Af000000000001'
        assert result.status == 'Unknown'
        assert result.total == 2
        assert result.failed == 2
        assert all(r.kind.value == 'UpstreamError' for r in result.results)
        data = result.to_dict()
        assert data['componentsTotal'] == 2
        assert [e['component'] for e in data['errors']] == ['A', 'B']

    def test_submit_failure_has_no_job_id(self):
        client = make_client()
        client.deploy_archive.side_effect = UpstreamError('HTTP 500', status_code=500)
        components = normalize_components([apex('A'), apex('B')])
        result = deploy_components(client, components, OperationOptions(checkOnly=True), Settings())

        assert result.job_id is None
        assert result.status == 'NotSubmitted'
        assert result.failed == 2
        client.deploy_status.assert_not_called()

    def test_status_failure_with_rollback_claims_no_rollback(self):
        client = make_client()
        client.deploy_status.side_effect = UpstreamError('HTTP 503', status_code=503)
        components = normalize_components([apex('A'), apex('B')])
        result = deploy_components(client, components, OperationOptions(rollbackOnError=True), Settings())

        assert result.success is False
        assert result.rolled_back is None
        assert result.job_id == '0Af000000000001'

    def test_test_failures_fail_compiled_components(self):
        client = make_client()
        client.deploy_status.return_value = deploy_result(
            'Failed',
            successes=[{'componentType': 'ApexClass', 'fullName': 'A'}],
        )
        client.deploy_status.return_value['details']['runTestResult'] = {
            'failures': [{'name': 'ATest', 'methodName': 'testIt', 'message': 'Assertion Failed'}],
        }
        result = deploy_components(client, normalize_components(apex('A')), OperationOptions(checkOnly=True), Settings())

        assert result.success is False
        assert 'ATest.testIt: Assertion Failed' in result.results[0].error


class TestDeployResultParsing:

    def test_single_failure_dict_accepted(self):
        components = normalize_components(apex('A'))
        outcomes = outcomes_from_deploy_result(components, {
            'status': 'Failed',
            'details': {'componentFailures': {'componentType': 'ApexClass', 'fullName': 'A', 'problem': 'oops'}},
        })
        assert outcomes[0].error == 'oops'

    def test_multiple_problems_joined(self):
        components = normalize_components(apex('A'))
        outcomes = outcomes_from_deploy_result(components, {
            'status': 'Failed',
            'details': {'componentFailures': [
                {'componentType': 'ApexClass', 'fullName': 'A', 'problem': 'one'},
                {'componentType': 'ApexClass', 'fullName': 'A', 'problem': 'two'},
            ]},
        })
        assert outcomes[0].error == 'one; two'


class TestCheckDeployStatus:

    def test_reports_counts(self):
        client = make_client()
        client.deploy_status.return_value = deploy_result(
            'InProgress', numberComponentsDeployed=1, numberComponentsTotal=3
        )
        status = check_deploy_status(client, '0Af000000000001')
        assert status['status'] == 'InProgress'
        assert status['done'] is False
        assert status['numberComponentsTotal'] == 3

    def test_job_id_required(self):
        with pytest.raises(ValidationError):
            check_deploy_status(make_client(), '  ')
