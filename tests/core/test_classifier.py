"""
Unit tests for `core/classifier.py` – IntentClassifier scoring in isolation.

The classifier is a pure function of its input (message, selected subjects and grades), so these tests
need no mocks: they feed requests in and check the winning intent, its confidence, the matched keywords
and the extracted parameters. The expected numbers below follow directly from the scoring table
(keywords 0.3 x weight, regexes 0.5 x weight, context 0.2 x context score).
"""

import unittest

from core.classifier import IntentClassifier, _round_half_up
from shared.models import IntentType


class TestIntentClassifier(unittest.TestCase):
    """
    Unit tests for the `IntentClassifier` class.

    These tests cover:
    - The worked worksheet example with subject and grade context
    - Fallback behaviour for empty or unmatched requests
    - Tie breaking by table order, and the confidence cap
    - Parameter extraction for worksheet and translation requests
    - Suggestions for partially typed text
    """

    def setUp(self):
        self.classifier = IntentClassifier()

    def test_worksheet_request_with_context(self):
        """
        "Create a worksheet for Grade 3 addition" with Mathematics and grade 3 scores 0.86 for worksheet
        generation (keyword 0.3 + regex 0.5 + context 0.06), ahead of grade adaptation at 0.64.
        """
        intent = self.classifier.classify("Create a worksheet for Grade 3 addition", ["Mathematics"], [3])

        self.assertEqual(intent.type, IntentType.WORKSHEET_GENERATION.value)
        self.assertEqual(intent.confidence, 86)
        self.assertEqual(intent.matched_keywords, ["worksheet"])
        self.assertFalse(intent.is_fallback)
        self.assertEqual(intent.parameters["difficulty"], "medium")
        self.assertEqual(intent.parameters["subjects"], ["Mathematics"])
        self.assertEqual(intent.parameters["grades"], [3])
        self.assertNotIn("count", intent.parameters)

    def test_empty_message_falls_back_to_general_query(self):
        intent = self.classifier.classify("")

        self.assertEqual(intent.type, IntentType.GENERAL_QUERY.value)
        self.assertTrue(intent.is_fallback)
        self.assertLessEqual(intent.confidence, 10)
        self.assertEqual(intent.matched_keywords, [])

    def test_none_message_is_treated_as_empty(self):
        intent = self.classifier.classify(None)
        self.assertTrue(intent.is_fallback)

    def test_unmatched_message_falls_back(self):
        intent = self.classifier.classify("hello there")
        self.assertTrue(intent.is_fallback)
        self.assertEqual(intent.confidence, 10)

    def test_tie_goes_to_earlier_row(self):
        """'practice' (worksheet) and 'test' (quiz) both score 0.3; worksheet comes first in the table."""
        intent = self.classifier.classify("practice test")

        self.assertEqual(intent.type, IntentType.WORKSHEET_GENERATION.value)
        self.assertEqual(intent.confidence, 30)

    def test_confidence_is_capped(self):
        intent = self.classifier.classify(
            "Create a worksheet with exercise practice homework assignment activity sheet"
        )
        self.assertEqual(intent.confidence, 95)

    def test_confidence_always_in_range(self):
        messages = [
            "",
            "explain photosynthesis",
            "translate this story into hindi",
            "create a quiz with 10 questions",
            "how do I manage behavior problems in class",
            "talk to parents about the family meeting",
        ]
        for message in messages:
            with self.subTest(message=message):
                intent = self.classifier.classify(message, ["Science"], [2, 4])
                self.assertGreaterEqual(intent.confidence, 0)
                self.assertLessEqual(intent.confidence, 95)

    def test_classification_is_deterministic(self):
        first = self.classifier.classify("Create a quiz with 10 questions", ["Mathematics"], [4])
        second = self.classifier.classify("Create a quiz with 10 questions", ["Mathematics"], [4])
        self.assertEqual(first.to_dict(), second.to_dict())

    def test_quiz_request_extracts_count(self):
        intent = self.classifier.classify("create a quiz with 10 questions")

        self.assertEqual(intent.type, IntentType.QUIZ_GENERATION.value)
        self.assertEqual(intent.parameters["count"], 10)
        self.assertEqual(intent.parameters["difficulty"], "medium")

    def test_translation_extracts_target_language(self):
        intent = self.classifier.classify("translate this story into hindi")

        self.assertEqual(intent.type, IntentType.TRANSLATION.value)
        self.assertEqual(intent.parameters["targetLanguage"], "hi")
        self.assertIn("translate", intent.matched_keywords)

    def test_suggestions_for_prefix(self):
        self.assertEqual(self.classifier.suggestions("wor"), ["worksheetGeneration: worksheet"])

    def test_suggestions_are_limited_to_five(self):
        suggestions = self.classifier.suggestions("")
        self.assertEqual(len(suggestions), 5)
        self.assertEqual(suggestions[0], "worksheetGeneration: worksheet")

    def test_available_intents_lists_table_order(self):
        intents = self.classifier.available_intents()
        self.assertEqual(intents[0], IntentType.WORKSHEET_GENERATION.value)
        self.assertEqual(intents[-1], IntentType.GENERAL_QUERY.value)
        self.assertEqual(len(intents), 10)

    def test_round_half_up(self):
        self.assertEqual(_round_half_up(24.5), 25)
        self.assertEqual(_round_half_up(85.5), 86)
        self.assertEqual(_round_half_up(85.49), 85)


if __name__ == "__main__":
    unittest.main()
