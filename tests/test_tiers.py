"""
Test the extraction tiers and the fallback chain

Uses mocked model clients and content indexes; no model is loaded.
"""

import asyncio
import json
import threading

import pytest

from formly.contracts import ExtractionRequest, ExtractionResult, FieldProposal, RetrievedContent
from formly.core.template_model import parse_template
from formly.tiers.base import ExtractionError, ExtractionErrorKind, TierKind
from formly.tiers.chain import AttemptStatus, ExtractionTierChain
from formly.tiers.model_tier import ModelTier
from formly.tiers.retrieval_tier import RetrievalTier
from formly.tiers.rule_tier import RuleTier
from formly.utils.prompt_builder import DEFAULT_SYSTEM_PROMPT, PromptBuildError, PromptBuilder


TEMPLATE = parse_template({
    "metadata": {"id": "tiers", "name": "Tier Test", "version": "1"},
    "schema": {"sections": [{
        "id": "main",
        "fields": [
            {"id": "full_name", "label": "Full name", "type": "text", "required": True},
            {"id": "dob", "label": "Date of birth", "type": "date", "required": True},
            {"id": "email", "label": "Email address", "type": "email", "required": True},
            {"id": "phone", "label": "Phone number", "type": "phone"},
            {"id": "moved", "label": "Moved recently", "type": "boolean", "required": True},
            {"id": "mailing_address", "label": "Mailing address", "type": "text", "required": True},
            {"id": "method", "label": "Renewal method", "type": "choice", "options": ["Mail", "In Person"]},
            {"id": "years", "label": "Years there", "type": "number"},
        ],
    }]},
    "conversationFlow": {"steps": [
        {"id": "identity", "title": "Identity", "expectedFields": ["full_name", "dob"]},
        {"id": "contact", "title": "Contact", "expectedFields": ["email", "phone", "moved"]},
        {"id": "address", "title": "Address", "expectedFields": ["mailing_address", "years"]},
        {"id": "method", "title": "Method", "expectedFields": ["method"]},
    ]},
})


def make_request(step_id, utterance, answers=None, focus=None, context=()):
    return ExtractionRequest(
        template=TEMPLATE,
        step=TEMPLATE.step(step_id),
        answers=answers or {},
        utterance=utterance,
        context=tuple(context),
        focus_field=focus,
    )


def proposals(result):
    return {p.field_id: p.raw_value for p in result.updates}


class MockHFClient:
    """Mock HuggingFace client for testing"""

    def __init__(self, response=None, should_fail=False, fail_type='json', loaded=True):
        self.response = response
        self.should_fail = should_fail
        self.fail_type = fail_type
        self.loaded = loaded
        self.call_count = 0
        self.last_prompt = None
        self.last_system = None

    def is_loaded(self):
        return self.loaded

    def generate_json(self, prompt, system=None, max_tokens=512, temperature=0.0, stop_event=None):
        self.call_count += 1
        self.last_prompt = prompt
        self.last_system = system

        if self.should_fail:
            if self.fail_type == 'json':
                return "{invalid json"
            elif self.fail_type == 'cuda':
                raise RuntimeError("CUDA out of memory")
            elif self.fail_type == 'shape':
                return '{"updates": {"fieldId": "email"}}'

        return self.response or '{"updates": [], "notes": []}'


class MockIndex:
    """Mock content index returning canned snippets"""

    def __init__(self, snippets=(), should_fail=False):
        self.snippets = list(snippets)
        self.should_fail = should_fail
        self.queries = []

    def __len__(self):
        return len(self.snippets)

    def search(self, query, k=3):
        self.queries.append((query, k))
        if self.should_fail:
            raise RuntimeError("index corrupted")
        return self.snippets[:k]


class StubTier:
    """Tier with scripted behaviour"""

    def __init__(self, kind, available=True, result=None, error=None, delay=0.0):
        self.kind = kind
        self.available = available
        self.result = result if result is not None else ExtractionResult()
        self.error = error
        self.delay = delay
        self.calls = 0

    def is_available(self):
        return self.available

    async def extract(self, request):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


GUIDANCE = RetrievedContent(text="Use the address printed on your utility bill.", source="dmv-faq", similarity=0.82)


# ========== Rule tier ==========

def test_rule_tier_typed_extractors():
    request = make_request("contact", "my email is Jane@Example.com and phone 555-123-4567", focus="email")
    result = asyncio.run(RuleTier().extract(request))

    assert proposals(result) == {"email": "jane@example.com", "phone": "555-123-4567"}
    assert result.next_step_id is None


def test_rule_tier_yes_only_answers_asked_field():
    asked = asyncio.run(RuleTier().extract(make_request("contact", "yes I have", focus="moved")))
    assert proposals(asked) == {"moved": "true"}

    # Not asked about 'moved': the fallback hands the text to the asked field instead
    not_asked = asyncio.run(RuleTier().extract(make_request("contact", "yes", focus="email")))
    assert proposals(not_asked) == {"email": "yes"}


def test_rule_tier_skip_word_blanks_first_optional_field():
    result = asyncio.run(RuleTier().extract(make_request("contact", "skip", focus="phone")))
    assert proposals(result) == {"phone": ""}


def test_rule_tier_skip_with_no_optional_field():
    result = asyncio.run(RuleTier().extract(make_request("identity", "n/a", focus="full_name")))
    assert result.updates == ()


def test_rule_tier_label_keyword():
    result = asyncio.run(RuleTier().extract(make_request("identity", "Full name: Jane Doe", focus="dob")))
    assert proposals(result) == {"full_name": "Jane Doe"}


def test_rule_tier_date_and_fallback_to_asked_field():
    dated = asyncio.run(RuleTier().extract(make_request("identity", "born 01/15/1990", focus="full_name")))
    assert proposals(dated) == {"dob": "01/15/1990"}

    plain = asyncio.run(RuleTier().extract(make_request("identity", "Jane Doe", focus="full_name")))
    assert proposals(plain) == {"full_name": "Jane Doe"}


def test_rule_tier_focus_field_first():
    request = make_request("identity", "Jane", answers={"full_name": "Old Name", "dob": "x"}, focus="dob")
    result = asyncio.run(RuleTier().extract(request))

    # Revisited step: every expected field is a target, the asked one first
    assert proposals(result) == {"dob": "Jane"}


def test_rule_tier_choice_and_number():
    method = asyncio.run(RuleTier().extract(make_request("method", "I'll go in person", focus="method")))
    assert proposals(method) == {"method": "In Person"}

    years = asyncio.run(RuleTier().extract(make_request(
        "address", "about 12 years", answers={"mailing_address": "12 Main St"}, focus="years"
    )))
    assert proposals(years)["years"] == "12"


def test_rule_tier_address_keyword_outside_step():
    # Contact step has no address field; the tier still proposes the template's
    request = make_request("contact", "my address is 12 Main St", focus="email")
    result = asyncio.run(RuleTier().extract(request))

    assert proposals(result) == {"mailing_address": "12 Main St"}


@pytest.mark.parametrize("utterance", [
    "what address should I use?",
    "which address?",
    "I moved to Springfield",
])
def test_rule_tier_address_without_address_field(utterance):
    template = parse_template({
        "metadata": {"id": "name-only", "name": "Name Only", "version": "1"},
        "schema": {"sections": [{"id": "main", "fields": [
            {"id": "full_name", "label": "Full name", "type": "text", "required": True},
        ]}]},
        "conversationFlow": {"steps": [{"id": "who", "expectedFields": ["full_name"]}]},
    })
    request = ExtractionRequest(
        template=template,
        step=template.step("who"),
        answers={},
        utterance=utterance,
        focus_field="full_name",
    )

    result = asyncio.run(RuleTier().extract(request))

    assert result.updates == ()


def test_rule_tier_plain_answer_still_falls_back():
    result = asyncio.run(RuleTier().extract(make_request("identity", "Jane Street", focus="full_name")))

    assert proposals(result) == {"full_name": "Jane Street"}


def test_rule_tier_related_guidance_notes():
    request = make_request("address", "where do I find it?", focus="mailing_address", context=[GUIDANCE])
    result = asyncio.run(RuleTier().extract(request))

    assert result.notes == ("Related guidance: Use the address printed on your utility bill.",)


def test_rule_tier_empty_utterance():
    result = asyncio.run(RuleTier().extract(make_request("identity", "   ", focus="full_name")))
    assert result.updates == ()


def test_rule_tier_never_raises():
    class BrokenRuleTier(RuleTier):
        def _extract(self, request):
            raise RuntimeError("boom")

    result = asyncio.run(BrokenRuleTier().extract(make_request("identity", "Jane")))
    assert result == ExtractionResult()


# ========== Retrieval tier ==========

def test_retrieval_tier_availability():
    assert not RetrievalTier().is_available()
    assert not RetrievalTier(MockIndex()).is_available()
    assert RetrievalTier(MockIndex([GUIDANCE])).is_available()


def test_retrieval_tier_unavailable_raises():
    with pytest.raises(ExtractionError) as info:
        asyncio.run(RetrievalTier(MockIndex()).extract(make_request("identity", "Jane")))
    assert info.value.kind == ExtractionErrorKind.UNAVAILABLE


def test_retrieval_tier_augments_rule_tier():
    index = MockIndex([GUIDANCE])
    tier = RetrievalTier(index, top_k=2)
    result = asyncio.run(tier.extract(make_request("address", "my address is 12 Main St", focus="mailing_address")))

    assert index.queries == [("my address is 12 Main St", 2)]
    assert proposals(result)["mailing_address"] == "12 Main St"
    assert result.notes == ("Related guidance: Use the address printed on your utility bill.",)


def test_retrieval_tier_search_failure():
    tier = RetrievalTier(MockIndex([GUIDANCE], should_fail=True))
    with pytest.raises(ExtractionError) as info:
        asyncio.run(tier.extract(make_request("identity", "Jane")))
    assert info.value.kind == ExtractionErrorKind.RETRIEVAL_FAILED
    assert info.value.tier == TierKind.RETRIEVAL


def test_retrieval_tier_rejects_bad_top_k():
    with pytest.raises(ValueError, match="top_k"):
        RetrievalTier(MockIndex(), top_k=0)


# ========== Model tier ==========

def test_model_tier_success():
    client = MockHFClient(response=json.dumps({
        "updates": [{"fieldId": "email", "value": "jane@example.com"}, {"fieldId": "moved", "value": True}],
        "nextStepId": "address",
        "notes": ["Thanks!"],
    }))
    tier = ModelTier(client)
    request = make_request("contact", "jane@example.com, and yes I moved", focus="email")

    result = asyncio.run(tier.extract(request))

    assert proposals(result) == {"email": "jane@example.com", "moved": "true"}
    assert result.next_step_id == "address"
    assert result.notes == ("Thanks!",)
    assert client.call_count == 1
    assert client.last_system == DEFAULT_SYSTEM_PROMPT


def test_model_tier_drops_unsupported_text():
    client = MockHFClient(response=json.dumps({
        "updates": [{"fieldId": "full_name", "value": "John Smith"}, {"fieldId": "dob", "value": "1990-01-15"}],
    }))
    result = asyncio.run(ModelTier(client).extract(make_request("identity", "I'm Jane, born 1990-01-15")))

    assert proposals(result) == {"dob": "1990-01-15"}
    assert result.notes == ("I couldn't find 'John Smith' in what you wrote, so Full name was not filled in.",)


def test_model_tier_skips_null_values():
    client = MockHFClient(response='{"updates": [{"fieldId": "dob", "value": null}]}')
    result = asyncio.run(ModelTier(client).extract(make_request("identity", "not sure")))
    assert result.updates == ()


@pytest.mark.parametrize("fail_type, kind", [
    ('json', ExtractionErrorKind.MALFORMED_MODEL_OUTPUT),
    ('shape', ExtractionErrorKind.MALFORMED_MODEL_OUTPUT),
    ('cuda', ExtractionErrorKind.GENERATION_FAILED),
])
def test_model_tier_failures(fail_type, kind):
    tier = ModelTier(MockHFClient(should_fail=True, fail_type=fail_type))

    with pytest.raises(ExtractionError) as info:
        asyncio.run(tier.extract(make_request("identity", "Jane")))
    assert info.value.kind == kind


@pytest.mark.parametrize("response", [
    '["not", "an", "object"]',
    '{"updates": [{"value": "x"}]}',
    '{"updates": [{"fieldId": "dob", "value": {"nested": 1}}]}',
    '{"updates": [], "nextStepId": 7}',
    '{"updates": [], "notes": [1, 2]}',
])
def test_model_tier_shape_checks(response):
    tier = ModelTier(MockHFClient(response=response))
    with pytest.raises(ExtractionError) as info:
        asyncio.run(tier.extract(make_request("identity", "Jane")))
    assert info.value.kind == ExtractionErrorKind.MALFORMED_MODEL_OUTPUT


def test_model_tier_unavailable():
    assert not ModelTier().is_available()
    assert not ModelTier(MockHFClient(loaded=False)).is_available()

    with pytest.raises(ExtractionError) as info:
        asyncio.run(ModelTier().extract(make_request("identity", "Jane")))
    assert info.value.kind == ExtractionErrorKind.UNAVAILABLE


def test_model_tier_rejects_bad_client():
    with pytest.raises(TypeError, match="generate_json"):
        ModelTier(client=object())


class BlockingHFClient:
    """Client whose generation runs until told to stop"""

    def __init__(self):
        self.started = threading.Event()
        self.stop_event = None

    def is_loaded(self):
        return True

    def generate_json(self, prompt, system=None, max_tokens=512, temperature=0.0, stop_event=None):
        self.stop_event = stop_event
        self.started.set()
        stop_event.wait(5)
        return '{"updates": []}'


def test_model_tier_cancel_stops_generation():
    client = BlockingHFClient()

    async def scenario():
        task = asyncio.ensure_future(ModelTier(client).extract(make_request("identity", "Jane Doe")))
        await asyncio.to_thread(client.started.wait, 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert client.stop_event.is_set()


# ========== Prompt builder ==========

def test_prompt_builder_sections():
    request = make_request("contact", "it's jane@example.com", answers={"email": "old@example.com"}, focus="phone")
    system, prompt = PromptBuilder().build(request)

    assert system == DEFAULT_SYSTEM_PROMPT
    assert "Step: Contact (id: contact)" in prompt
    assert "  - phone: Phone number (phone)" in prompt
    assert "  - email: old@example.com" in prompt
    assert "Currently asking about: phone (Phone number)" in prompt
    assert 'User said: "it\'s jane@example.com"' in prompt


def test_prompt_builder_uses_template_system_prompt():
    template = parse_template({
        "metadata": {"id": "t", "name": "T", "version": "1"},
        "schema": {"sections": [{"id": "s", "fields": [{"id": "x", "label": "X", "type": "text"}]}]},
        "conversationFlow": {"steps": [{"id": "only", "expectedFields": ["x"]}]},
        "systemPrompt": "Custom policy.",
    })
    request = ExtractionRequest(template=template, step=template.steps[0], answers={}, utterance="hi")

    system, _ = PromptBuilder().build(request)
    assert system == "Custom policy."


def test_prompt_builder_rejects_empty_utterance():
    with pytest.raises(PromptBuildError):
        PromptBuilder().build(make_request("identity", "  "))


# ========== Chain ==========

def test_chain_orders_tiers():
    chain = ExtractionTierChain([
        RuleTier(),
        StubTier(TierKind.RETRIEVAL),
        StubTier(TierKind.MODEL),
    ])
    assert [t.kind for t in chain.tiers] == [TierKind.MODEL, TierKind.RETRIEVAL, TierKind.RULES]


def test_chain_requires_rule_tier():
    with pytest.raises(ValueError, match="rule tier"):
        ExtractionTierChain([StubTier(TierKind.MODEL)])


def test_chain_rejects_duplicates_and_bad_tiers():
    with pytest.raises(ValueError, match="Duplicate"):
        ExtractionTierChain([RuleTier(), RuleTier()])
    with pytest.raises(TypeError):
        ExtractionTierChain([RuleTier(), object()])
    with pytest.raises(ValueError, match="tier_timeout"):
        ExtractionTierChain([RuleTier()], tier_timeout=0)


def test_unavailable_model_never_invoked():
    model = StubTier(TierKind.MODEL, available=False)
    chain = ExtractionTierChain([model, RetrievalTier(), RuleTier()])

    outcome = asyncio.run(chain.run(make_request("identity", "Jane Doe", focus="full_name")))

    assert model.calls == 0
    assert outcome.tier == TierKind.RULES
    assert [a.status for a in outcome.attempts] == [
        AttemptStatus.UNAVAILABLE, AttemptStatus.UNAVAILABLE, AttemptStatus.SUCCEEDED,
    ]
    assert chain.available_tiers() == [TierKind.RULES]


def test_model_success_stops_the_chain():
    expected = ExtractionResult(updates=(FieldProposal("full_name", "Jane"),))
    retrieval = StubTier(TierKind.RETRIEVAL)
    rules = StubTier(TierKind.RULES)
    chain = ExtractionTierChain([StubTier(TierKind.MODEL, result=expected), retrieval, rules])

    outcome = asyncio.run(chain.run(make_request("identity", "Jane")))

    assert outcome.result is expected
    assert outcome.tier == TierKind.MODEL
    assert retrieval.calls == 0 and rules.calls == 0


def test_malformed_model_falls_back_through_retrieval_to_rules():
    model = ModelTier(MockHFClient(should_fail=True, fail_type='json'))
    retrieval = RetrievalTier(MockIndex([GUIDANCE], should_fail=True))
    chain = ExtractionTierChain([model, retrieval, RuleTier()])
    request = make_request("identity", "Jane Doe", focus="full_name")

    outcome = asyncio.run(chain.run(request))

    assert outcome.tier == TierKind.RULES
    assert outcome.result == asyncio.run(RuleTier().extract(request))
    assert [a.to_dict()['status'] for a in outcome.attempts] == ['failed', 'failed', 'succeeded']
    assert outcome.attempts[0].error.kind == ExtractionErrorKind.MALFORMED_MODEL_OUTPUT
    assert outcome.attempts[1].error.kind == ExtractionErrorKind.RETRIEVAL_FAILED


def test_rule_tier_invoked_only_when_higher_tiers_fail():
    rules = StubTier(TierKind.RULES)
    chain = ExtractionTierChain([StubTier(TierKind.RETRIEVAL, result=ExtractionResult()), rules])

    asyncio.run(chain.run(make_request("identity", "Jane")))
    assert rules.calls == 0


def test_chain_timeout_falls_back():
    slow = StubTier(TierKind.MODEL, result=ExtractionResult(notes=("late",)), delay=1.0)
    chain = ExtractionTierChain([slow, RuleTier()], tier_timeout=0.01)

    outcome = asyncio.run(chain.run(make_request("identity", "Jane Doe", focus="full_name")))

    assert outcome.tier == TierKind.RULES
    assert outcome.attempts[0].error.kind == ExtractionErrorKind.TIMEOUT


def test_unexpected_exception_recorded():
    broken = StubTier(TierKind.MODEL, error=KeyError("surprise"))
    chain = ExtractionTierChain([broken, RuleTier()])

    outcome = asyncio.run(chain.run(make_request("identity", "Jane")))

    assert outcome.tier == TierKind.RULES
    assert outcome.attempts[0].error.kind == ExtractionErrorKind.GENERATION_FAILED
    assert "KeyError" in outcome.attempts[0].error.detail


def test_wrong_result_type_is_malformed():
    chain = ExtractionTierChain([StubTier(TierKind.MODEL, result={"updates": []}), RuleTier()])

    outcome = asyncio.run(chain.run(make_request("identity", "Jane")))
    assert outcome.attempts[0].error.kind == ExtractionErrorKind.MALFORMED_MODEL_OUTPUT


def test_failing_rule_tier_gives_empty_result():
    rules = StubTier(TierKind.RULES, error=RuntimeError("bad rules"))
    chain = ExtractionTierChain([rules])

    outcome = asyncio.run(chain.run(make_request("identity", "Jane")))

    assert outcome.result == ExtractionResult()
    assert outcome.tier == TierKind.RULES
    assert outcome.attempts[-1].status == AttemptStatus.FAILED
