"""Tests for the transactional email bodies."""

import resend

import notifications


def capture(monkeypatch, test_settings):
    sent = []
    monkeypatch.setattr(test_settings, "resend_api_key", "re_test")
    monkeypatch.setattr(resend.Emails, "send", lambda params: sent.append(params) or {"id": "email_1"})
    return sent


class TestEscaping:
    def test_user_name_is_escaped(self, monkeypatch, test_settings):
        sent = capture(monkeypatch, test_settings)
        user = {"name": "<script>alert(1)</script>", "email": "a@example.com"}
        assert notifications.send_password_reset_email(user, "tok") == "email_1"
        body = sent[0]["html"]
        assert "<script>" not in body
        assert "&lt;script&gt;" in body

    def test_item_names_are_escaped(self, monkeypatch, test_settings):
        sent = capture(monkeypatch, test_settings)
        order = {
            "order_number": "ORD-1",
            "currency": "usd",
            "total_cents": 1100,
            "items": [{"name": "Mug <b>XL</b>", "quantity": 1, "total_cents": 1000}],
        }
        notifications.send_order_confirmation("a@example.com", order)
        body = sent[0]["html"]
        assert "Mug &lt;b&gt;XL&lt;/b&gt;" in body
        assert "<b>" not in body

    def test_disabled_without_key(self, monkeypatch, test_settings):
        calls = []
        monkeypatch.setattr(resend.Emails, "send", lambda params: calls.append(params))
        assert notifications.send_verification_email({"name": "Ann", "email": "a@example.com"}, "tok") is None
        assert calls == []
