import pytest

from notifications import OTP, PASSWORD_RESET, WELCOME, EmailProvider, Notification, Notifier, render


class FakeProvider(EmailProvider):
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, notification):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(notification)
        return True, None


def test_render_each_kind():
    subject, html, text = render(Notification("a@example.com", OTP, {"otp": "123456", "name": "Ann"}))
    assert "OTP" in subject
    assert "123456" in html and "123456" in text
    assert "Hello Ann!" in html

    subject, html, _ = render(Notification("a@example.com", PASSWORD_RESET, {"otp": "654321"}))
    assert subject == "Password Reset Code"
    assert "654321" in html

    subject, _, text = render(Notification("a@example.com", WELCOME, {"name": "Ann"}))
    assert subject == "Welcome!"
    assert "Ann" in text


def test_unknown_kind_is_rejected():
    with pytest.raises(ValueError):
        Notifier(FakeProvider()).enqueue("a@example.com", "newsletter")


def test_worker_delivers_queued_mail():
    provider = FakeProvider()
    notifier = Notifier(provider)
    notifier.start()
    notifier.enqueue("a@example.com", OTP, {"otp": "111111"})
    notifier.enqueue("b@example.com", WELCOME)
    notifier.stop()

    assert [n.to for n in provider.sent] == ["a@example.com", "b@example.com"]


def test_delivery_failure_is_contained():
    notifier = Notifier(FakeProvider(fail=True))
    assert notifier.deliver(Notification("a@example.com", OTP, {"otp": "1"})) is False
