"""Tests for request-type policies built from settings."""

from unittest.mock import patch

from matchgate.core.services.ai.request_policy import (
    DEFAULT_ENDPOINT,
    MATCH_EXPLANATION,
    MATCH_SET,
    QA_CHAT,
    build_request_policies,
)


@patch("matchgate.core.services.ai.request_policy.settings")
def test_policies_follow_settings(mock_settings):
    mock_settings.CACHE_TTL_MATCH_SET = 86400
    mock_settings.CACHE_TTL_MATCH_EXPLANATION = 21600
    mock_settings.CACHE_TTL_QA_CHAT = 3600
    mock_settings.MAX_OUTPUT_TOKENS_MATCH_SET = 2048
    mock_settings.MAX_OUTPUT_TOKENS_MATCH_EXPLANATION = 1024
    mock_settings.MAX_OUTPUT_TOKENS_QA_CHAT = 700

    policies = build_request_policies()

    assert set(policies) == {MATCH_SET, MATCH_EXPLANATION, QA_CHAT}
    assert policies[MATCH_SET].cache_ttl_seconds > policies[MATCH_EXPLANATION].cache_ttl_seconds
    assert policies[QA_CHAT].max_output_tokens == 700
    assert all(policy.endpoint == DEFAULT_ENDPOINT for policy in policies.values())


@patch("matchgate.core.services.ai.request_policy.settings")
def test_policies_clamp_tiny_values(mock_settings):
    mock_settings.CACHE_TTL_MATCH_SET = 0
    mock_settings.CACHE_TTL_MATCH_EXPLANATION = 5
    mock_settings.CACHE_TTL_QA_CHAT = 3600
    mock_settings.MAX_OUTPUT_TOKENS_MATCH_SET = 1
    mock_settings.MAX_OUTPUT_TOKENS_MATCH_EXPLANATION = 1024
    mock_settings.MAX_OUTPUT_TOKENS_QA_CHAT = 1024

    policies = build_request_policies()

    assert policies[MATCH_SET].cache_ttl_seconds == 60
    assert policies[MATCH_EXPLANATION].cache_ttl_seconds == 60
    assert policies[MATCH_SET].max_output_tokens == 100
