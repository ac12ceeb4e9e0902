from types import SimpleNamespace

from orderflow.analytics import Bottleneck
from orderflow.insights import bottleneck_prompt, generate_bottleneck_insight
from orderflow.statuses import OrderStatus

BOTTLENECKS = [
    Bottleneck(status=OrderStatus.WASHING, avg_minutes=182.4, samples=12),
    Bottleneck(status=OrderStatus.QUALITY_CHECK, avg_minutes=95, samples=12),
]


class FakeCompletions:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_prompt_lists_each_stage():
    prompt = bottleneck_prompt(BOTTLENECKS)
    assert "Washing: average 182 minutes over 12 orders" in prompt
    assert "Quality Check" in prompt


def test_insight_returns_model_reply():
    completions = FakeCompletions(reply="Add a second washer during the morning peak.")
    text = generate_bottleneck_insight(BOTTLENECKS, client=fake_client(completions))

    assert text == "Add a second washer during the morning peak."
    assert completions.requests[0]["messages"][-1]["role"] == "user"


def test_insight_failure_is_reported_not_raised():
    completions = FakeCompletions(error=ConnectionError("connection refused"))
    text = generate_bottleneck_insight(BOTTLENECKS, client=fake_client(completions))
    assert text.startswith("Insight unavailable")


def test_no_bottlenecks_skips_the_model():
    completions = FakeCompletions(reply="unused")
    assert generate_bottleneck_insight([], client=fake_client(completions)) == "No data available."
    assert completions.requests == []
