"""Tests for job polling, configuration and the tool response envelope."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest
from salesforce_mcp.config import Settings
from salesforce_mcp.errors import DeployTimeoutError, NotFoundError, UpstreamError
from salesforce_mcp.models import AsyncJob, JobState, map_platform_state
from salesforce_mcp.polling import BackoffPolicy, Deadline, poll_job


class TestBackoff:

    def test_doubles_up_to_cap(self):
        policy = BackoffPolicy(1.0, 15.0)
        intervals, current = [], None
        for _ in range(6):
            current = policy.next_interval(current)
            intervals.append(current)
        assert intervals == [1.0, 2.0, 4.0, 8.0, 15.0, 15.0]


class TestPollJob:

    def test_stops_at_terminal_state(self):
        statuses = iter(['Pending', 'InProgress', 'Succeeded'])
        calls = []

        def refresh(job):
            status = next(statuses)
            calls.append(status)
            job.observe(status, {'status': status})

        job = poll_job(AsyncJob(id='0Af1'), refresh, Deadline(5000), BackoffPolicy(0.001, 0.002))
        assert job.state is JobState.SUCCEEDED
        assert calls == ['Pending', 'InProgress', 'Succeeded']

    def test_times_out_without_terminal_state(self):
        def refresh(job):
            job.observe('InProgress', {})

        with pytest.raises(DeployTimeoutError) as exc:
            poll_job(AsyncJob(id='0Af1'), refresh, Deadline(30), BackoffPolicy(0.005, 0.01))
        assert exc.value.job_id == '0Af1'
        assert exc.value.to_dict()['errorKind'] == 'DeployTimeoutError'

    def test_cancel_stops_polling(self):
        deadline = Deadline(60000)
        deadline.cancel()
        refreshes = []

        def refresh(job):
            refreshes.append(1)
            job.observe('InProgress', {})

        with pytest.raises(DeployTimeoutError, match='cancelled'):
            poll_job(AsyncJob(id='0Af1'), refresh, deadline)
        assert len(refreshes) == 1

    def test_fake_clock_deadline(self):
        now = [0.0]
        deadline = Deadline(1000, clock=lambda: now[0])
        assert deadline.remaining() == 1.0
        now[0] = 1.5
        assert deadline.expired
        assert deadline.elapsed_ms() == 1500


class TestJobStates:

    def test_platform_states(self):
        assert map_platform_state('Pending') is JobState.QUEUED
        assert map_platform_state('UploadComplete') is JobState.QUEUED
        assert map_platform_state('SucceededPartial') is JobState.SUCCEEDED
        assert map_platform_state('JobComplete') is JobState.SUCCEEDED
        assert map_platform_state('Aborted') is JobState.CANCELED
        assert map_platform_state('SomethingNew') is JobState.IN_PROGRESS


class TestSettings:

    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.api_version == '61.0'
        assert settings.timeout_ms == 120000
        assert settings.bulk_dml_threshold == 200
        assert settings.deploy_batch_threshold == 10
        assert settings.login_url == 'https://login.salesforce.com'
        assert not settings.uses_oauth and not settings.uses_password

    def test_oauth_shape(self):
        settings = Settings.from_env({
            'SF_CLIENT_ID': 'id',
            'SF_CLIENT_SECRET': 'secret',
            'SF_REFRESH_TOKEN': 'refresh',
            'SF_INSTANCE_URL': 'https://example.my.salesforce.com/',
        })
        assert settings.uses_oauth
        assert settings.instance_url == 'https://example.my.salesforce.com'

    def test_numeric_overrides(self):
        settings = Settings.from_env({
            'SF_TIMEOUT': '5000',
            'SF_MAX_CONCURRENCY': '0',
            'SF_POLL_INITIAL_INTERVAL': '0.5',
            'SF_LOG_LEVEL': 'debug',
        })
        assert settings.timeout_ms == 5000
        assert settings.max_concurrency == 1
        assert settings.poll_initial_interval == 0.5
        assert settings.log_level == 'DEBUG'

    def test_invalid_number(self):
        with pytest.raises(ValueError, match='SF_TIMEOUT'):
            Settings.from_env({'SF_TIMEOUT': 'ten'})


class TestToolEnvelope:

    def test_success_wraps_data(self):
        from salesforce_mcp.server import run_tool
        assert run_tool('x', lambda: {'a': 1}) == {'_success': True, 'data': {'a': 1}}

    def test_engine_error_is_structured(self):
        from salesforce_mcp.server import run_tool

        def boom():
            raise NotFoundError('ApexClass:Nope not found', component='Nope')

        result = run_tool('retrieve-metadata', boom)
        assert result == {
            '_success': False,
            'error': 'ApexClass:Nope not found',
            'errorKind': 'NotFound',
            'component': 'Nope',
        }

    def test_upstream_error_carries_codes(self):
        from salesforce_mcp.server import run_tool

        def boom():
            raise UpstreamError('bad', status_code=500, error_code='UNKNOWN_EXCEPTION')

        result = run_tool('deploy-metadata', boom)
        assert result['errorKind'] == 'UpstreamError'
        assert result['error_code'] == 'UNKNOWN_EXCEPTION'

    def test_unexpected_error_never_raises(self):
        from salesforce_mcp.server import run_tool

        def boom():
            raise RuntimeError('kaboom')

        result = run_tool('deploy-bundle', boom)
        assert result['_success'] is False
        assert result['errorKind'] == 'InternalError'
        assert 'kaboom' in result['error']

    def test_upstream_error_after_submit_reports_job(self):
        from salesforce_mcp.server import run_tool

        def boom():
            raise UpstreamError('HTTP 503', status_code=503, job_id='0Af1')

        result = run_tool('deploy-bundle', boom)
        assert result['jobId'] == '0Af1'
        assert result['errorKind'] == 'UpstreamError'
