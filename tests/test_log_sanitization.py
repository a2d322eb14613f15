"""
Test log sanitization and correlation ids.

Verifies that provider keys and realtime credentials are redacted from logs.
"""

import structlog

from voice_ordering.logging_config import (
    add_correlation_id,
    add_service_context,
    get_correlation_id,
    reset_correlation_id,
    sanitize_secrets,
    set_correlation_id,
)


class TestLogSanitization:
    """Tests for secret sanitization processor."""

    def test_redact_api_key(self):
        event_dict = {
            'message': 'Calling provider',
            'api_key': 'sk-1234567890abcdef',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['api_key'] == 'sk***REDACTED***'
        assert result['message'] == 'Calling provider'

    def test_redact_ephemeral_token(self):
        """Realtime client secrets keep only their family prefix."""
        event_dict = {
            'message': 'Issued realtime token',
            'ephemeral_token': 'ek_68b1c2d3e4f5',
            'customer_id': 'cust_1',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['ephemeral_token'] == 'ek***REDACTED***'
        assert result['customer_id'] == 'cust_1'

    def test_redact_authorization_header(self):
        event_dict = {
            'message': 'HTTP request',
            'authorization': 'Bearer sk-1234567890abcdef',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['authorization'].startswith('Be***REDACTED***')

    def test_short_values_fully_redacted(self):
        result = sanitize_secrets(None, None, {'token': 'abc'})

        assert result['token'] == '***REDACTED***'

    def test_case_insensitive_matching(self):
        event_dict = {
            'API_KEY': 'sk-test',
            'Password': 'secret',
            'ACCESS_TOKEN': 'token123',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert 'REDACTED' in result['API_KEY']
        assert 'REDACTED' in result['Password']
        assert 'REDACTED' in result['ACCESS_TOKEN']

    def test_nested_provider_response(self):
        """Should sanitize a realtime session payload logged as a dict."""
        event_dict = {
            'message': 'Realtime session created',
            'response': {
                'id': 'sess_123',
                'client_secret': {'value': 'ek_abcdef', 'expires_at': 1700000000},
                'modalities': ['text', 'audio'],
            },
        }
        result = sanitize_secrets(None, None, event_dict)

        secret = result['response']['client_secret']
        assert secret['value'] == 'ek***REDACTED***'
        assert secret['expires_at'] == '***REDACTED***'
        assert result['response']['id'] == 'sess_123'
        assert result['response']['modalities'] == ['text', 'audio']

    def test_dicts_inside_lists(self):
        event_dict = {
            'providers': [{'name': 'openai', 'api_key': 'sk-inner-key'}],
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['providers'][0]['name'] == 'openai'
        assert 'REDACTED' in result['providers'][0]['api_key']

    def test_preserve_non_sensitive_data(self):
        event_dict = {
            'message': 'Turn processed',
            'session_id': 'a1b2c3',
            'turn_id': 4,
            'action': 'add_item',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result == event_dict

    def test_empty_and_none_values_preserved(self):
        result = sanitize_secrets(None, None, {'api_key': '', 'token': None, 'secret': True})

        assert result['api_key'] == ''
        assert result['token'] is None
        assert result['secret'] is True

    def test_list_with_sensitive_data(self):
        event_dict = {
            'api_keys': ['sk-key1', 'sk-key2', 'sk-key3'],
        }
        result = sanitize_secrets(None, None, event_dict)

        assert all('REDACTED' in key for key in result['api_keys'])

    def test_hyphenated_key_names(self):
        event_dict = {
            'client-secret': 'secret123',
            'api-key': 'sk-test',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert 'REDACTED' in result['client-secret']
        assert 'REDACTED' in result['api-key']

    def test_no_false_positive_on_passthrough(self):
        """Keys that merely contain "pass" are left alone."""
        event_dict = {
            'passthrough_formats': ['wav', 'mp3'],
            'passes_validation': True,
        }
        result = sanitize_secrets(None, None, event_dict)

        assert result['passthrough_formats'] == ['wav', 'mp3']
        assert result['passes_validation'] is True

    def test_suffix_match_still_redacted(self):
        event_dict = {
            'user_password': 'secret123',
            'pass': 'secret789',
        }
        result = sanitize_secrets(None, None, event_dict)

        assert 'REDACTED' in result['user_password']
        assert 'REDACTED' in result['pass']


class TestCorrelationId:
    def test_set_and_reset(self):
        token = set_correlation_id('session-42')
        try:
            assert get_correlation_id() == 'session-42'
            assert add_correlation_id(None, 'info', {})['correlation_id'] == 'session-42'
        finally:
            reset_correlation_id(token)

        assert get_correlation_id() is None
        assert 'correlation_id' not in add_correlation_id(None, 'info', {})

    def test_generated_when_missing(self):
        token = set_correlation_id()
        try:
            assert len(get_correlation_id()) == 36
        finally:
            reset_correlation_id(token)


def test_service_context_uses_logger_name():
    logger = structlog.stdlib.get_logger('voice_ordering.core.session_registry')
    event_dict = add_service_context(logger, 'info', {'logger': 'voice_ordering.api.app'})

    assert event_dict['service'] == 'voice-ordering'
    assert event_dict['component'] == 'voice_ordering.api.app'
