# tests/utils/test_naming.py
import pytest

from orchestrate.services.exceptions import PatternError
from orchestrate.utils.naming import pattern_tokens, region_of, resolve, validate_pattern

CONTEXT = {
    "type": "render",
    "region": "us-central1",
    "zone": "us-central1-a",
    "project": "proj",
    "gpu_count": 2,
    "gpu_type": "t4-vws",
    "user": "alice",
}


def test_resolves_every_token():
    name = resolve("{type}-{region}-{gpu_count}x{gpu_type}-{user}", CONTEXT)
    assert name == "render-us-central1-2xt4-vws-alice"


def test_pattern_without_tokens_is_returned_as_is():
    assert resolve("static-name", {}) == "static-name"


def test_missing_tokens_are_all_reported():
    # === Arrange ===
    context = {key: value for key, value in CONTEXT.items() if not key.startswith("gpu")}

    # === Act & Assert ===
    with pytest.raises(PatternError) as excinfo:
        resolve("{type}-{gpu_count}x{gpu_type}-{user}", context)
    assert excinfo.value.tokens == ["gpu_count", "gpu_type"]


def test_missing_region_is_named_and_nothing_is_substituted():
    context = {key: value for key, value in CONTEXT.items() if key != "region"}

    with pytest.raises(PatternError) as excinfo:
        resolve("{type}-{region}-{gpu_count}x{gpu_type}-{user}", context)

    assert excinfo.value.tokens == ["region"]
    assert "region" in str(excinfo.value)


def test_none_counts_as_missing():
    with pytest.raises(PatternError) as excinfo:
        resolve("{type}-{user}", {"type": "render", "user": None})
    assert excinfo.value.tokens == ["user"]


def test_repeated_tokens_are_listed_once():
    assert pattern_tokens("{user}-{type}-{user}") == ["user", "type"]


@pytest.mark.parametrize("pattern", ["{type", "{type!r}", "{type:>10}", "{}", "{0}", "{type.name}"])
def test_unsupported_placeholders(pattern):
    with pytest.raises(PatternError):
        pattern_tokens(pattern)


def test_validate_pattern_rejects_unknown_tokens():
    with pytest.raises(PatternError) as excinfo:
        validate_pattern("{type}-{shot}-{colour}")
    assert excinfo.value.tokens == ["shot", "colour"]


def test_validate_pattern_accepts_known_tokens():
    validate_pattern("{type}-{region}-{zone}-{project}-{template}-{size}-{gpu_count}x{gpu_type}-{user}")


@pytest.mark.parametrize("zone, region", [("us-central1-a", "us-central1"), ("europe-west4-b", "europe-west4"), ("local", "local")])
def test_region_of(zone, region):
    assert region_of(zone) == region
