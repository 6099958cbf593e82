# tests/test_keys.py
import hashlib
import pytest
from dotformer.keys import canonical_options, derive_key, options_hash, resolve_format


def test_key_layout():
    """Key is transformed/{stem}_{10 hex}.{format}."""
    key = derive_key("acc_1/cat.png", {"width": 100})
    prefix, name = key.split("/")
    assert prefix == "transformed"
    stem, rest = name.split("_", 1)
    digest, ext = rest.split(".")
    assert stem == "cat"
    assert len(digest) == 10
    assert ext == "png"


def test_hash_matches_compact_sorted_pairs():
    options = {"width": 100, "grayscale": True}
    expected = hashlib.md5(b'[["grayscale",true],["width",100]]').hexdigest()[:10]
    assert options_hash(options) == expected


def test_determinism_ignores_key_order():
    a = {"width": 100, "height": 50, "fit": "cover"}
    b = {"fit": "cover", "height": 50, "width": 100}
    assert derive_key("cat.png", a) == derive_key("cat.png", b)


@pytest.mark.parametrize("other", [
    {"width": 101, "height": 100},
    {"width": 100, "height": 100, "grayscale": True},
    {"width": 100},
    {"width": 100, "height": 100, "format": "webp"},
])
def test_sensitivity(other):
    base = {"width": 100, "height": 100}
    assert derive_key("cat.png", base) != derive_key("cat.png", other)


def test_absent_option_differs_from_explicit_default():
    assert derive_key("cat.png", {}) != derive_key("cat.png", {"quality": 80})


def test_none_values_are_dropped():
    assert canonical_options({"width": 10, "height": None}) == '[["width",10]]'
    assert derive_key("cat.png", {"width": 10, "height": None}) == derive_key("cat.png", {"width": 10})


def test_integral_floats_hash_like_ints():
    assert options_hash({"width": 100.0}) == options_hash({"width": 100})


def test_empty_options_hash_empty_list():
    assert canonical_options({}) == "[]"
    assert derive_key("photo.jpg", {}) == f"transformed/photo_{hashlib.md5(b'[]').hexdigest()[:10]}.jpg"


def test_format_resolution():
    assert resolve_format("cat.png", {"format": "webp"}) == "webp"
    assert resolve_format("cat.png", {}) == "png"
    assert resolve_format("README", {}) == "jpg"
    assert derive_key("acc/cat.png", {"format": "webp"}).endswith(".webp")


def test_stem_uses_last_path_segment():
    key = derive_key("acc_1/albums/holiday.cat.jpeg", {})
    assert key.startswith("transformed/holiday.cat_")
    assert key.endswith(".jpeg")
