"""
Pytest configuration and fixtures for all tests.

This file contains fixtures that are automatically available to all test files.
"""

import os
import typing

import pytest


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """
    Sets up environment variables required for all tests.

    This fixture runs once per test session and automatically applies to all tests
    (autouse=True). It sets environment variables that the application expects to be
    present at runtime.
    """
    # AWS Configuration
    os.environ["AWS_REGION"] = "us-west-1"

    # DynamoDB Table Names
    os.environ["PROGRESS_LEDGER_TABLE_NAME"] = "test-progress-ledger-table"
    os.environ["PROGRESS_LEDGER_ID"] = "test-ledger"

    yield


@pytest.fixture(scope="function")
def aws_credentials() -> typing.Iterator[None]:
    """
    Mocks AWS credentials for moto (AWS mocking library).

    This fixture is used by DynamoDB table tests that use the mock_aws context
    manager from moto. It sets fake AWS credentials that moto expects.
    """
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-west-1"
    yield
    # Clean up after each test
    del os.environ["AWS_ACCESS_KEY_ID"]
    del os.environ["AWS_SECRET_ACCESS_KEY"]
    del os.environ["AWS_SECURITY_TOKEN"]
    del os.environ["AWS_SESSION_TOKEN"]
    del os.environ["AWS_DEFAULT_REGION"]
