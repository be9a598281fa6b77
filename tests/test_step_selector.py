"""
Test Suite for StepSelector and step-exit rules

Navigation decisions are pure functions of (template, step index, answers,
fired rules, hint), so every case builds its answers inline.
Run with: pytest tests/test_step_selector.py
"""

import unittest
from datetime import date

from formly.core.step_rules import evaluate_step_rules
from formly.core.step_selector import (
    HINT_GAP_UNANSWERED,
    HINT_HONOURED,
    HINT_NONE,
    HINT_NOT_FORWARD,
    HINT_RULE_APPLIED,
    HINT_STEP_INCOMPLETE,
    HINT_UNKNOWN_STEP,
    Navigation,
    StepSelector,
)
from formly.core.template_model import StepRuleKind, StepValidationRule, parse_template


FLOW_TEMPLATE = {
    "metadata": {"id": "flow", "name": "Flow", "version": "1"},
    "schema": {"sections": [{
        "id": "main",
        "fields": [
            {"id": "a", "label": "A", "type": "text", "required": True},
            {"id": "flag", "label": "Flag", "type": "boolean", "required": True},
            {"id": "b", "label": "B", "type": "text", "required": True},
            {"id": "c", "label": "C", "type": "text"},
            {"id": "d", "label": "D", "type": "text"},
            {"id": "start", "label": "Start date", "type": "date"},
            {"id": "end", "label": "End date", "type": "date"},
        ],
    }]},
    "conversationFlow": {"steps": [
        {
            "id": "s0",
            "expectedFields": ["a", "flag"],
            "conditionalLogic": [
                {"condition": "flag == true", "action": "show-message", "message": "Heads up"},
            ],
        },
        {
            "id": "s1",
            "expectedFields": ["b"],
            "validationRules": [{"field": "b", "rule": "required"}],
            "conditionalLogic": [{"condition": "flag == false", "action": "skip"}],
        },
        {
            "id": "s2",
            "expectedFields": ["c"],
            "conditionalLogic": [{"condition": "c == 'jump'", "action": "branch-to:s4"}],
        },
        {
            "id": "s3",
            "expectedFields": ["d"],
            "conditionalLogic": [{"condition": "d == 'back'", "action": "branch-to", "target": "s0"}],
        },
        {
            "id": "s4",
            "expectedFields": ["start", "end"],
            "validationRules": [{"field": "start", "rule": "before_field", "value": "end"}],
        },
    ]},
}


def first_steps_answered(**extra):
    answers = {"a": "Ann", "flag": True}
    answers.update(extra)
    return answers


# =============================================================================
# PART 1: Default advancement
# =============================================================================

class TestDefaultAdvancement(unittest.TestCase):

    def setUp(self):
        self.template = parse_template(FLOW_TEMPLATE)
        self.selector = StepSelector(self.template)

    def test_stay_reprompts_first_unanswered(self):
        decision = self.selector.decide(0, {"flag": False})

        self.assertEqual(decision.navigation, Navigation.STAY)
        self.assertFalse(decision.leaves_step)
        self.assertEqual(decision.reprompt_field, "a")

    def test_advance_when_all_answered(self):
        decision = self.selector.decide(0, {"a": "Ann", "flag": False})

        self.assertEqual(decision.navigation, Navigation.ADVANCE)
        self.assertEqual(decision.target_index, 1)
        self.assertEqual(decision.hint_status, HINT_NONE)

    def test_explicit_blank_counts_as_answered(self):
        decision = self.selector.decide(2, {"c": None})
        self.assertEqual(decision.navigation, Navigation.ADVANCE)

    def test_last_step_completes(self):
        decision = self.selector.decide(4, {"start": date(2024, 1, 1), "end": date(2024, 2, 1)})

        self.assertEqual(decision.navigation, Navigation.COMPLETE)
        self.assertIsNone(decision.target_index)

    def test_step_rule_failure_stays_on_rule_field(self):
        decision = self.selector.decide(4, {"start": date(2024, 3, 1), "end": date(2024, 2, 1)})

        self.assertEqual(decision.navigation, Navigation.STAY)
        self.assertEqual(decision.reprompt_field, "start")
        self.assertEqual(decision.rule_failure.rule.rule, StepRuleKind.BEFORE_FIELD)
        self.assertEqual(decision.notes, ("Start date must be before End date.",))

    def test_question_field(self):
        self.assertEqual(self.selector.question_field(0, {"a": "Ann"}), "flag")
        self.assertIsNone(self.selector.question_field(0, first_steps_answered()))
        self.assertEqual(self.selector.question_field(0, first_steps_answered(), reopened=True), "a")


# =============================================================================
# PART 2: Conditional logic
# =============================================================================

class TestConditionalLogic(unittest.TestCase):

    def setUp(self):
        self.template = parse_template(FLOW_TEMPLATE)
        self.selector = StepSelector(self.template)

    def test_informational_rule_attaches_note_then_advances(self):
        decision = self.selector.decide(0, first_steps_answered())

        self.assertEqual(decision.notes, ("Heads up",))
        self.assertEqual(decision.fired_rules, (0,))
        self.assertEqual(decision.navigation, Navigation.ADVANCE)

    def test_informational_rule_fires_once_per_visit(self):
        decision = self.selector.decide(0, first_steps_answered(), fired={0})

        self.assertEqual(decision.notes, ())
        self.assertEqual(decision.fired_rules, ())

    def test_informational_rule_fires_while_staying(self):
        decision = self.selector.decide(0, {"flag": True})

        self.assertEqual(decision.navigation, Navigation.STAY)
        self.assertEqual(decision.notes, ("Heads up",))

    def test_skip_excuses_current_step(self):
        decision = self.selector.decide(1, {"a": "Ann", "flag": False})

        self.assertEqual(decision.navigation, Navigation.SKIP)
        self.assertEqual(decision.target_index, 2)
        self.assertEqual(decision.excused_steps, (1,))

    def test_skip_ignores_required_rule_on_excused_field(self):
        # s1 carries a 'required' rule on b; skipping must not be blocked by it
        decision = self.selector.decide(1, {"flag": False})
        self.assertEqual(decision.navigation, Navigation.SKIP)

    def test_forward_branch_excuses_steps_in_between(self):
        decision = self.selector.decide(2, {"c": "jump"})

        self.assertEqual(decision.navigation, Navigation.BRANCH)
        self.assertEqual(decision.target_index, 4)
        self.assertEqual(decision.excused_steps, (2, 3))

    def test_backward_branch_reopens(self):
        decision = self.selector.decide(3, {"d": "back"})

        self.assertEqual(decision.navigation, Navigation.BRANCH)
        self.assertEqual(decision.target_index, 0)
        self.assertEqual(decision.reopened_steps, (0, 1, 2, 3))
        self.assertEqual(decision.excused_steps, ())

    def test_first_matching_rule_wins(self):
        rule_index, rule = self.selector.matching_rule(self.template.step("s0"), {"flag": True})
        self.assertEqual(rule_index, 0)
        self.assertIsNone(self.selector.matching_rule(self.template.step("s0"), {"flag": False}))


# =============================================================================
# PART 3: Advisory next-step hint
# =============================================================================

class TestNextStepHint(unittest.TestCase):

    def setUp(self):
        self.template = parse_template(FLOW_TEMPLATE)
        self.selector = StepSelector(self.template)

    def test_hint_to_next_step_is_honoured(self):
        decision = self.selector.decide(0, first_steps_answered(), fired={0}, hint="s1")

        self.assertEqual(decision.target_index, 1)
        self.assertEqual(decision.hint_status, HINT_HONOURED)

    def test_hint_jump_over_answered_steps(self):
        decision = self.selector.decide(0, first_steps_answered(b="Bo"), fired={0}, hint="s2")

        self.assertEqual(decision.navigation, Navigation.ADVANCE)
        self.assertEqual(decision.target_index, 2)
        self.assertEqual(decision.hint_status, HINT_HONOURED)

    def test_hint_ignored_when_gap_unanswered(self):
        decision = self.selector.decide(0, first_steps_answered(), fired={0}, hint="s2")

        self.assertEqual(decision.target_index, 1)
        self.assertEqual(decision.hint_status, HINT_GAP_UNANSWERED)

    def test_hint_ignored_when_step_incomplete(self):
        decision = self.selector.decide(0, {"a": "Ann"}, hint="s1")

        self.assertEqual(decision.navigation, Navigation.STAY)
        self.assertEqual(decision.hint_status, HINT_STEP_INCOMPLETE)

    def test_hint_ignored_when_unknown(self):
        decision = self.selector.decide(0, first_steps_answered(), fired={0}, hint="nowhere")
        self.assertEqual(decision.hint_status, HINT_UNKNOWN_STEP)

    def test_hint_ignored_when_backward(self):
        decision = self.selector.decide(2, {"c": "x"}, hint="s0")

        self.assertEqual(decision.target_index, 3)
        self.assertEqual(decision.hint_status, HINT_NOT_FORWARD)

    def test_hint_ignored_when_rule_applies(self):
        decision = self.selector.decide(1, {"flag": False}, hint="s4")

        self.assertEqual(decision.navigation, Navigation.SKIP)
        self.assertEqual(decision.target_index, 2)
        self.assertEqual(decision.hint_status, HINT_RULE_APPLIED)


# =============================================================================
# PART 4: Step rules
# =============================================================================

class TestStepRules(unittest.TestCase):

    def setUp(self):
        self.template = parse_template(FLOW_TEMPLATE)

    def rule(self, field, kind, value=None, message=None):
        return StepValidationRule(field=field, rule=kind, value=value, message=message)

    def test_required_fails_on_blank(self):
        failure = evaluate_step_rules(self.template, [self.rule("c", StepRuleKind.REQUIRED)], {"c": None})

        self.assertEqual(failure.field_id, "c")
        self.assertEqual(failure.message, "C is required.")

    def test_equals_is_case_insensitive(self):
        rules = [self.rule("c", StepRuleKind.EQUALS, "In Person")]
        self.assertIsNone(evaluate_step_rules(self.template, rules, {"c": "in person"}))
        self.assertIsNotNone(evaluate_step_rules(self.template, rules, {"c": "Mail"}))

    def test_not_equals_custom_message(self):
        rules = [self.rule("c", StepRuleKind.NOT_EQUALS, "none", message="Pick something.")]
        failure = evaluate_step_rules(self.template, rules, {"c": "None"})
        self.assertEqual(failure.message, "Pick something.")

    def test_matches_field(self):
        rules = [self.rule("c", StepRuleKind.MATCHES_FIELD, "d")]
        self.assertIsNone(evaluate_step_rules(self.template, rules, {"c": "x", "d": "X"}))
        self.assertEqual(
            evaluate_step_rules(self.template, rules, {"c": "x", "d": "y"}).message,
            "C must match D.",
        )

    def test_after_field(self):
        rules = [self.rule("end", StepRuleKind.AFTER_FIELD, "start")]
        ok = {"start": date(2024, 1, 1), "end": date(2024, 1, 2)}
        bad = {"start": date(2024, 1, 2), "end": date(2024, 1, 2)}
        self.assertIsNone(evaluate_step_rules(self.template, rules, ok))
        self.assertIsNotNone(evaluate_step_rules(self.template, rules, bad))

    def test_unanswered_operands_pass(self):
        rules = [
            self.rule("c", StepRuleKind.EQUALS, "x"),
            self.rule("start", StepRuleKind.BEFORE_FIELD, "end"),
        ]
        self.assertIsNone(evaluate_step_rules(self.template, rules, {"start": date(2024, 1, 1)}))

    def test_first_failing_rule_reported(self):
        rules = [self.rule("c", StepRuleKind.REQUIRED), self.rule("d", StepRuleKind.REQUIRED)]
        self.assertEqual(evaluate_step_rules(self.template, rules, {}).field_id, "c")


if __name__ == '__main__':
    unittest.main()
