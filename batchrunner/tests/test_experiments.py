import pytest

from batchrunner.core.core_errors import ConfigError, DuplicateExperimentError, UnknownExperimentError
from batchrunner.core.core_experiments import (
    DEFAULT_VOCABULARY,
    ExperimentRegistry,
    parse_experiments,
)


def test_default_vocabulary_covers_both_batches():
    registry = ExperimentRegistry()
    assert "measure-initial-population" in registry
    assert "succ-kinetic" in registry
    assert len(registry.names) == len(DEFAULT_VOCABULARY)


def test_typo_is_caught_with_suggestion():
    registry = ExperimentRegistry()
    with pytest.raises(UnknownExperimentError, match="succ-kinetic"):
        registry.validate("succ-kinetics")


def test_descriptor_argv_joins_flags():
    descriptors = parse_experiments(
        [
            "measure-initial-population,",
            {"name": "succ-kinetic", "flags": ["fast"], "args": ["--seed", "7"]},
        ],
        ExperimentRegistry(),
    )

    assert descriptors[0].name == "measure-initial-population"
    assert descriptors[0].argv == ["--experiment", "measure-initial-population"]
    assert descriptors[1].argv == ["--experiment", "succ-kinetic,fast", "--seed", "7"]


def test_names_unique_within_batch():
    with pytest.raises(DuplicateExperimentError):
        parse_experiments(["succ-kinetic", {"name": "succ-kinetic"}], ExperimentRegistry())


def test_custom_vocabulary_replaces_default():
    registry = ExperimentRegistry(["exp-a"])
    assert parse_experiments(["exp-a"], registry)[0].name == "exp-a"
    with pytest.raises(UnknownExperimentError):
        parse_experiments(["succ-kinetic"], registry)


def test_malformed_entries():
    with pytest.raises(ConfigError):
        parse_experiments([{"flags": ["x"]}])
    with pytest.raises(ConfigError):
        parse_experiments([42])
    with pytest.raises(ConfigError):
        ExperimentRegistry([])
