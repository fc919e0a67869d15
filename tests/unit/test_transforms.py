import pytest

from stepwright.errors import TransformError
from stepwright.flows.transforms import TransformInput, TransformName, apply_transform, lookup


def _inp(values, request=None, args=None):
    return TransformInput(values=values, request=request, args=args, step_id="s")


def test_passthrough_single_and_multiple():
    assert apply_transform("passthrough", _inp({"a": {"x": 1}})) == {"x": 1}
    assert apply_transform("passthrough", _inp({"a": 1, "b": 2})) == {"a": 1, "b": 2}


def test_merge_as_context_keeps_declaration_order():
    merged = apply_transform("merge_as_context", _inp({"review": "looks ok", "tests": "3 failing"}))
    assert merged == "## review\nlooks ok\n\n## tests\n3 failing"


def test_extract_section_returns_body_until_next_heading():
    text = "# Report\n## Summary\n\nAll good.\n\n## Details\nmore"
    assert apply_transform("extract_section", _inp({"a": text}, args="Summary")) == "All good."


def test_extract_section_missing_raises():
    with pytest.raises(TransformError, match="Section 'Risks' not found"):
        apply_transform("extract_section", _inp({"a": "## Summary\nx"}, args="Risks"))


def test_append_to_request():
    result = apply_transform("append_to_request", _inp({"a": "plan"}, request="build it"))
    assert result == "Original: build it\n\nStep Output: plan"


def test_json_extract_walks_dicts_and_lists():
    data = '{"files": [{"path": "a.py"}, {"path": "b.py"}]}'
    assert apply_transform("json_extract", _inp({"a": data}, args="files.1.path")) == "b.py"
    with pytest.raises(TransformError, match="not found"):
        apply_transform("json_extract", _inp({"a": data}, args="files.5.path"))
    with pytest.raises(TransformError, match="Invalid JSON"):
        apply_transform("json_extract", _inp({"a": "not json"}, args="x"))


def test_template_fill():
    result = apply_transform(
        "template_fill", _inp({"a": "Review {{file}} for {{team}}"}, args={"file": "x.py", "team": "core"})
    )
    assert result == "Review x.py for core"
    with pytest.raises(TransformError, match="Missing context variable: team"):
        apply_transform("template_fill", _inp({"a": "{{team}}"}, args={}))


def test_lookup_is_closed():
    assert lookup("merge_as_context") is TransformName.MERGE_AS_CONTEXT
    assert lookup("mergeAsContext") is None
    assert lookup("shell") is None
