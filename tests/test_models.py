"""Tests for roots subsystem models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from qr_roots_mcp.models import ConfigurationState, DirectoryInfo, RootsValidationResult, ValidationResult
from qr_roots_mcp.types import PRECEDENCE, ConfigurationSource, RiskLevel


class TestModels:
    def test_configuration_state_is_frozen(self):
        state = ConfigurationState(current_directory="/srv/qr", source=ConfigurationSource.DEFAULT)
        with pytest.raises(ValidationError):
            state.current_directory = "/elsewhere"

    def test_processing_time_non_negative(self):
        with pytest.raises(ValidationError):
            ValidationResult(is_valid=False, processing_time=-1)

    def test_roots_result_serialises_diagnostics(self):
        result = RootsValidationResult(
            is_valid=False,
            risk_level=RiskLevel.HIGH,
            diagnostics=[ValidationResult(is_valid=False, errors=["Path traversal attack detected"])],
        )
        dumped = result.model_dump(mode="json")
        assert dumped["risk_level"] == "high"
        assert dumped["diagnostics"][0]["errors"] == ["Path traversal attack detected"]
        assert dumped["category"] is None

    def test_directory_info_defaults(self):
        info = DirectoryInfo(path="/missing")
        assert (info.exists, info.writable, info.qr_file_count, info.total_size) == (False, False, 0, 0)


class TestTypes:
    def test_precedence_order(self):
        assert PRECEDENCE == (
            ConfigurationSource.ROOTS,
            ConfigurationSource.ENVIRONMENT,
            ConfigurationSource.COMMAND_LINE,
            ConfigurationSource.DEFAULT,
        )

    def test_risk_ranking(self):
        ranked = sorted(RiskLevel, key=lambda r: r.rank)
        assert ranked == [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]
