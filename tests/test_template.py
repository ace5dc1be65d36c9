"""Tests for payload template rendering."""

from crmhooks.webhooks.template import apply_payload_template, render_template, resolve_path

BODY = {
    "id": "evt_1",
    "event": "deal.updated",
    "data": {
        "entity_id": "d1",
        "entity": {
            "name": "Acme",
            "amount": 5000,
            "closed": False,
            "owner": None,
            "tags": ["vip", "renewal"],
            "address": {"city": "Oslo"},
        },
    },
}


class TestResolvePath:
    """Tests for dotted path lookup."""

    def test_nested_keys(self):
        """Dotted paths walk nested objects."""
        assert resolve_path(BODY, "data.entity.address.city") == "Oslo"

    def test_list_index(self):
        """Numeric segments index into lists."""
        assert resolve_path(BODY, "data.entity.tags.1") == "renewal"

    def test_surrounding_whitespace_ignored(self):
        """Tokens like {{ data.entity_id }} are trimmed."""
        assert resolve_path(BODY, " data.entity_id ") == "d1"


class TestRenderTemplate:
    """Tests for render_template."""

    def test_scalar_substitution(self):
        """Tokens are replaced with string forms of the resolved values."""
        template = {"title": "{{data.entity.name}}", "value": "{{data.entity.amount}}"}
        assert render_template(template, BODY) == {"title": "Acme", "value": "5000"}

    def test_embedded_tokens(self):
        """Several tokens in one string are all substituted."""
        assert (
            render_template("{{event}} for {{data.entity.name}}", BODY)
            == "deal.updated for Acme"
        )

    def test_missing_path_renders_empty(self):
        """Unresolvable paths become the empty string."""
        assert render_template({"x": "[{{data.entity.nope.deeper}}]"}, BODY) == {"x": "[]"}

    def test_null_renders_empty(self):
        """A resolved null renders as an empty string."""
        assert render_template("{{data.entity.owner}}", BODY) == ""

    def test_boolean_and_container_rendering(self):
        """Booleans render lowercase and containers as compact JSON."""
        assert render_template("{{data.entity.closed}}", BODY) == "false"
        assert render_template("{{data.entity.tags}}", BODY) == '["vip","renewal"]'
        assert render_template("{{data.entity.address}}", BODY) == '{"city":"Oslo"}'

    def test_nested_template_structure(self):
        """Lists and nested objects inside the template are walked."""
        template = {
            "blocks": [{"text": "{{data.entity.name}}"}, "{{id}}"],
            "count": 3,
            "flag": True,
        }
        assert render_template(template, BODY) == {
            "blocks": [{"text": "Acme"}, "evt_1"],
            "count": 3,
            "flag": True,
        }

    def test_slack_style_template(self):
        """A chat-tool template yields exactly the substituted text."""
        template = {"text": "Deal {{data.entity.name}} updated"}
        assert render_template(template, BODY) == {"text": "Deal Acme updated"}


class TestApplyPayloadTemplate:
    """Tests for apply_payload_template."""

    def test_no_template_returns_copy(self):
        """Without a template the body is copied, not shared."""
        result = apply_payload_template(None, BODY)
        assert result == BODY
        result["data"]["entity"]["name"] = "Changed"
        assert BODY["data"]["entity"]["name"] == "Acme"

    def test_template_does_not_touch_source(self):
        """Rendering never modifies the canonical body."""
        apply_payload_template({"n": "{{data.entity.name}}"}, BODY)
        assert BODY["data"]["entity"]["name"] == "Acme"
