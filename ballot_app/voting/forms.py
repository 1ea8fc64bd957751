"""Request schemas for the JSON API.

Each endpoint validates its payload once with one of these forms; the service
layer then works with clean, typed values.
"""

from __future__ import annotations

from django import forms
from django.core.exceptions import ValidationError

from voting.models import CARD_NUMBER_PATTERN, Election


class IdListField(forms.Field):
    """A list of positive integer ids, from a JSON array or a comma-separated string."""

    def to_python(self, value):
        if value in (None, "", []):
            return []
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        if not isinstance(value, (list, tuple)):
            raise ValidationError("Enter a list of ids.")
        try:
            ids = [int(item) for item in value]
        except (TypeError, ValueError) as exc:
            raise ValidationError("Ids must be integers.") from exc
        if any(i <= 0 for i in ids):
            raise ValidationError("Ids must be positive.")
        if len(set(ids)) != len(ids):
            raise ValidationError("Ids must be unique.")
        return ids


class ChallengeRequestForm(forms.Form):
    email = forms.EmailField()


class ChallengeVerifyForm(forms.Form):
    email = forms.EmailField()
    code = forms.RegexField(regex=r"^\d{6}$", error_messages={"invalid": "Enter the 6-digit code."})


class CredentialRequestForm(forms.Form):
    election_id = forms.IntegerField(min_value=1)
    email = forms.EmailField()
    card_number = forms.RegexField(
        regex=CARD_NUMBER_PATTERN,
        error_messages={"invalid": "Election card number must be 3 uppercase letters followed by 7 digits."},
    )

    def clean_card_number(self) -> str:
        return self.cleaned_data["card_number"].strip()


class CredentialVerifyForm(CredentialRequestForm):
    voting_password = forms.CharField(max_length=64, strip=True)


class CastVoteForm(forms.Form):
    election_id = forms.IntegerField(min_value=1)
    candidate_id = forms.IntegerField(min_value=1)


class CandidateAssignForm(forms.Form):
    candidate_id = forms.IntegerField(min_value=1)


class ElectionCreateForm(forms.Form):
    title = forms.CharField(max_length=200)
    description = forms.CharField(max_length=1000, required=False)
    level = forms.ChoiceField(choices=Election.Level.choices, required=False)
    state = forms.CharField(max_length=50, required=False)
    district = forms.CharField(max_length=50, required=False)
    city = forms.CharField(max_length=100, required=False)
    voting_start = forms.DateTimeField()
    voting_end = forms.DateTimeField()
    result_declaration_at = forms.DateTimeField()
    is_secret_ballot = forms.BooleanField(required=False)
    total_voters = forms.IntegerField(min_value=0, required=False)
    candidate_ids = IdListField(required=False)

    def clean(self):
        cleaned = super().clean()
        start = cleaned.get("voting_start")
        end = cleaned.get("voting_end")
        declaration = cleaned.get("result_declaration_at")
        if start and end and start >= end:
            self.add_error("voting_end", "Voting end must be after voting start.")
        if end and declaration and declaration < end:
            self.add_error("result_declaration_at", "Result declaration must not be before voting end.")

        level = cleaned.get("level") or Election.Level.national
        cleaned["level"] = level
        if level != Election.Level.national and not cleaned.get("state"):
            self.add_error("state", "State is required for non-national elections.")
        if level not in {Election.Level.national, Election.Level.state} and not cleaned.get("district"):
            self.add_error("district", "District is required for local elections.")
        return cleaned

    def service_kwargs(self) -> dict[str, object]:
        data = self.cleaned_data
        return {
            "title": data["title"],
            "description": data.get("description") or "",
            "level": data["level"],
            "state": data.get("state") or "",
            "district": data.get("district") or "",
            "city": data.get("city") or "",
            "voting_start": data["voting_start"],
            "voting_end": data["voting_end"],
            "result_declaration_at": data["result_declaration_at"],
            # An omitted checkbox means the default policy, not "public ballot".
            "is_secret_ballot": data["is_secret_ballot"] if "is_secret_ballot" in self.data else True,
            "total_voters": data.get("total_voters") or 0,
            "candidate_ids": data.get("candidate_ids") or [],
        }


class ElectionUpdateForm(forms.Form):
    title = forms.CharField(max_length=200, required=False)
    description = forms.CharField(max_length=1000, required=False)
    level = forms.ChoiceField(choices=Election.Level.choices, required=False)
    state = forms.CharField(max_length=50, required=False)
    district = forms.CharField(max_length=50, required=False)
    city = forms.CharField(max_length=100, required=False)
    voting_start = forms.DateTimeField(required=False)
    voting_end = forms.DateTimeField(required=False)
    result_declaration_at = forms.DateTimeField(required=False)
    is_secret_ballot = forms.BooleanField(required=False)
    total_voters = forms.IntegerField(min_value=0, required=False)
    status = forms.ChoiceField(choices=Election.Status.choices, required=False)

    def clean(self):
        cleaned = super().clean()
        if not self.changes():
            raise ValidationError("No changes supplied.")
        if "title" in self.data and not cleaned.get("title"):
            self.add_error("title", "Title cannot be blank.")
        return cleaned

    def changes(self) -> dict[str, object]:
        """Only the fields the caller actually sent."""
        cleaned = getattr(self, "cleaned_data", {})
        return {name: cleaned[name] for name in self.fields if name in self.data and name in cleaned}
