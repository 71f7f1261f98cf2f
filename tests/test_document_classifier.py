"""Tests for document type classification."""

import pytest

from credence.extraction.classifier import DocumentClassifier, DocumentType


@pytest.fixture
def classifier():
    return DocumentClassifier()


class TestClassify:
    def test_degree_certificate(self, classifier):
        assert classifier.classify("This Degree Certificate is awarded to") is DocumentType.DEGREE_CERTIFICATE

    def test_diploma(self, classifier):
        assert classifier.classify("DIPLOMA in Mechanical Engineering") is DocumentType.DEGREE_CERTIFICATE

    def test_transcript(self, classifier):
        assert classifier.classify("Official Transcript of Records") is DocumentType.TRANSCRIPT

    def test_mark_sheet(self, classifier):
        assert classifier.classify("Consolidated Mark Sheet") is DocumentType.TRANSCRIPT

    def test_provisional(self, classifier):
        assert classifier.classify("Provisional Certificate") is DocumentType.PROVISIONAL_CERTIFICATE

    def test_degree_wins_over_transcript(self, classifier):
        text = "Degree certificate issued along with the transcript"
        assert classifier.classify(text) is DocumentType.DEGREE_CERTIFICATE

    def test_unknown_text(self, classifier):
        assert classifier.classify("Electricity bill for March") is DocumentType.UNKNOWN

    @pytest.mark.parametrize("text", ["", "   ", None, 42])
    def test_empty_or_non_text(self, classifier, text):
        assert classifier.classify(text) is DocumentType.UNKNOWN


class TestConfidence:
    def test_unknown_confidence(self, classifier):
        assert classifier.confidence("anything", DocumentType.UNKNOWN) == 0.1

    def test_single_pattern(self, classifier):
        assert classifier.confidence("Official transcript", DocumentType.TRANSCRIPT) == 0.5

    def test_more_patterns_raise_confidence(self, classifier):
        text = "Transcript - grade report - academic record"
        assert classifier.confidence(text, DocumentType.TRANSCRIPT) == 0.9

    def test_capped(self, classifier):
        text = "degree certificate, bachelor degree, master degree, diploma, graduation certificate"
        assert classifier.confidence(text, DocumentType.DEGREE_CERTIFICATE) == 0.9

    def test_classify_with_confidence(self, classifier):
        doc_type, confidence = classifier.classify_with_confidence("Degree Certificate")
        assert doc_type is DocumentType.DEGREE_CERTIFICATE
        assert confidence == 0.5

    def test_custom_pattern_groups(self):
        custom = DocumentClassifier([(DocumentType.TRANSCRIPT, [r"marks"])])
        assert custom.classify("Degree certificate") is DocumentType.UNKNOWN
        assert custom.classify("marks obtained") is DocumentType.TRANSCRIPT
