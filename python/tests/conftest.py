"""
Pytest configuration and shared fixtures for clusterse package tests.
"""

import pytest
import numpy as np
import pandas as pd
from scipy.special import expit
import warnings
import matplotlib
import os
import sys

# Set matplotlib to non-interactive backend for testing
matplotlib.use('Agg')

# Add parent directory to path to import clusterse
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import clusterse


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


def pytest_collection_modifyitems(config, items):
    """Mark slow tests by name."""
    for item in items:
        if "slow" in item.name or "parallel" in item.name:
            item.add_marker(pytest.mark.slow)


@pytest.fixture
def suppress_warnings():
    """Suppress warnings during testing."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        yield


@pytest.fixture
def scenario_data():
    """
    Eight observations, intercept + binary predictor, four clusters of two.

    Each cluster holds one unexposed and one exposed observation. Both groups
    have an event rate of 1/2, so the saturated logistic fit has mu = 0.5 and
    working weights of 0.25 everywhere. Worked by hand:
    bread = [[1, -1], [-1, 2]], every hat block is 0.25 * I,
    meat = 4/9 * [[8, 4], [4, 4]], correction = 4/3 * 7/6 and
    covariance = 224/81 * [[1, -1], [-1, 2]].
    """
    x = np.array([0, 0, 0, 0, 1, 1, 1, 1], dtype=np.float64)
    design_matrix = np.column_stack([np.ones(8), x])
    y = np.array([1, 1, 0, 0, 1, 0, 1, 0], dtype=np.float64)
    mu = np.full(8, 0.5)
    weights = np.full(8, 0.25)
    working_residuals = (y - mu) / weights
    clusters = np.array([1, 2, 3, 4, 1, 2, 3, 4])

    return {
        'design_matrix': design_matrix,
        'y': y,
        'mu': mu,
        'weights': weights,
        'working_residuals': working_residuals,
        'clusters': clusters,
        'expected_bread': np.array([[1.0, -1.0], [-1.0, 2.0]]),
        'expected_meat': 4.0 / 9.0 * np.array([[8.0, 4.0], [4.0, 4.0]]),
        'expected_correction': 4.0 / 3.0 * 7.0 / 6.0,
        'expected_covariance': 224.0 / 81.0 * np.array([[1.0, -1.0], [-1.0, 2.0]]),
    }


@pytest.fixture
def logistic_design():
    """Design, response and four clusters for a small logistic problem."""
    np.random.seed(42)
    n_obs = 120

    design_matrix = np.column_stack([
        np.ones(n_obs),
        np.random.binomial(1, 0.5, n_obs),
        np.random.normal(0, 1, n_obs)
    ])
    beta = np.array([-0.3, 0.8, 0.4])
    y = np.random.binomial(1, expit(design_matrix @ beta)).astype(np.float64)
    clusters = np.random.choice(['EC1', 'EC2', 'EC3', 'EC4'], n_obs)

    return design_matrix, y, clusters


@pytest.fixture
def trial_data():
    """Create a realistic multi-centre trial dataset with four ethics committees."""
    np.random.seed(42)
    n_obs = 400

    committee = np.random.choice(['AT', 'DE', 'FR', 'IT'], n_obs, p=[0.2, 0.35, 0.25, 0.2])
    arm = np.random.choice(['placebo', 'active'], n_obs)
    sex = np.random.choice(['F', 'M'], n_obs)
    age = np.random.normal(60, 10, n_obs)
    site_effect = pd.Series(committee).map({'AT': -0.2, 'DE': 0.1, 'FR': 0.0, 'IT': 0.3})

    linear_predictor = (
        -0.5
        + 0.8 * (arm == 'active')
        + 0.3 * (sex == 'M')
        + 0.02 * (age - 60)
        + site_effect.to_numpy()
    )
    response = np.random.binomial(1, expit(linear_predictor))
    adverse_event = np.random.binomial(1, expit(-1.0 + 0.4 * (arm == 'active')))

    return pd.DataFrame({
        'patient_id': [f'P{i:04d}' for i in range(n_obs)],
        'committee': committee,
        'arm': arm,
        'sex': sex,
        'age': age,
        'response': response,
        'adverse_event': adverse_event,
        'per_protocol': np.random.binomial(1, 0.9, n_obs).astype(bool),
    })


@pytest.fixture
def trial_spec():
    """Model specification for the primary endpoint."""
    return clusterse.ModelSpec(
        name='primary',
        outcome='response',
        predictors=('arm', 'sex', 'age'),
        cluster='committee',
        reference_levels={'arm': 'placebo'},
    )


@pytest.fixture
def or_table():
    """Create a small odds ratio table for testing."""
    beta = np.array([-0.4, 0.9, 0.1, -0.05])
    covariance = np.diag([0.04, 0.09, 0.25, 0.0004])
    return clusterse.transform_coefficients(
        beta, covariance,
        feature_names=['Intercept', 'arm[T.active]', 'sex[T.M]', 'age']
    )
