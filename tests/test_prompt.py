"""Tests for prompt construction."""

import pytest

from prompt import EXPERT_FRAMING, INSTRUCTION_SUFFIX, SUBJECT_HEADER, build_prompt
from schemas import SubjectRecord

LABELS = ("Plant Name:", "Scientific Name:", "Description:", "Medicinal Uses:", "How to Use:")


class TestBuildPrompt:
    def test_general_prompt(self):
        prompt = build_prompt("Which herbs aid digestion?")

        assert prompt.startswith(EXPERT_FRAMING)
        assert "Which herbs aid digestion?" in prompt
        assert prompt.endswith(INSTRUCTION_SUFFIX)
        for label in LABELS:
            assert label not in prompt

    def test_query_is_trimmed(self):
        prompt = build_prompt("   What is Tulsi?  \n")
        assert f"{EXPERT_FRAMING} What is Tulsi?\n\n" in prompt

    def test_subject_prompt(self, ashwagandha):
        prompt = build_prompt("What helps with stress?", ashwagandha)

        assert prompt.startswith(SUBJECT_HEADER)
        assert "Plant Name: Ashwagandha" in prompt
        assert "Scientific Name: Withania somnifera" in prompt
        assert "Medicinal Uses: Stress, Vitality" in prompt
        assert "What helps with stress?" in prompt
        assert prompt.endswith(INSTRUCTION_SUFFIX)
        assert EXPERT_FRAMING not in prompt

    def test_absent_fields_are_omitted(self, ashwagandha):
        prompt = build_prompt("Dosage?", ashwagandha)

        assert "Description:" not in prompt
        assert "How to Use:" not in prompt
        assert "Not available" not in prompt

    @pytest.mark.parametrize(
        "field,label",
        [
            ("description", "Description:"),
            ("uses", "Medicinal Uses:"),
            ("usage_instructions", "How to Use:"),
        ],
    )
    def test_optional_field_present_iff_set(self, field, label):
        base = {"name": "Neem", "scientific_name": "Azadirachta indica"}
        without = build_prompt("Tell me more", SubjectRecord(**base))
        with_field = build_prompt("Tell me more", SubjectRecord(**base, **{field: "value-xyz"}))

        assert label not in without
        assert f"{label} value-xyz" in with_field

    def test_blank_field_is_omitted(self):
        subject = SubjectRecord(name="Neem", scientific_name="Azadirachta indica", description="   ")
        assert "Description:" not in build_prompt("Uses?", subject)

    def test_empty_record_falls_back_to_general(self):
        prompt = build_prompt("What is Brahmi?", SubjectRecord())
        assert prompt.startswith(EXPERT_FRAMING)

    def test_deterministic(self, ashwagandha):
        assert build_prompt("q", ashwagandha) == build_prompt("q", ashwagandha)
        assert build_prompt("q") == build_prompt("q")

    def test_record_not_modified(self, ashwagandha):
        before = ashwagandha.model_dump()
        build_prompt("What helps with stress?", ashwagandha)
        assert ashwagandha.model_dump() == before


class TestSubjectRecord:
    def test_wire_aliases(self):
        subject = SubjectRecord.model_validate(
            {
                "name": "Turmeric",
                "scientific_name": "Curcuma longa",
                "medicinal_uses": "Inflammation",
                "how_to_use": "With warm milk",
                "image_url": "ignored",
            }
        )
        assert subject.uses == "Inflammation"
        assert subject.usage_instructions == "With warm milk"

    def test_frozen(self, ashwagandha):
        with pytest.raises(Exception):
            ashwagandha.name = "Tulsi"
