from __future__ import annotations

from django.db import migrations

TEMPLATES = [
    {
        "name": "voting-credential",
        "description": "One-time voting password for an open election",
        "subject": "Your voting password for {{ election_title }}",
        "content": (
            "Hello{% if full_name %} {{ full_name }}{% endif %},\n\n"
            "Your one-time voting password for {{ election_title }} is:\n\n"
            "    {{ voting_password }}\n\n"
            "It can be used once and expires at {{ expires_at }}.\n"
            "If you did not request it, you can ignore this message.\n"
        ),
    },
    {
        "name": "election-results-declared",
        "description": "Result summary broadcast to voters in the election's jurisdiction",
        "subject": "Results declared: {{ election_title }}",
        "content": (
            "The results of {{ election_title }} have been declared.\n\n"
            "{% if winner_name %}Winner: {{ winner_name }}{% if winner_party %} ({{ winner_party }}){% endif %} "
            "with {{ winner_votes }} votes ({{ winner_percentage }}%)."
            "{% if winner_is_tie %} First place was tied; the winner was decided by ballot order.{% endif %}\n"
            "{% else %}No votes were cast, so no winner was declared.\n{% endif %}"
            "Votes cast: {{ total_votes_cast }} (turnout {{ turnout_percentage }}%).\n"
        ),
    },
    {
        "name": "challenge-code",
        "description": "Six-digit verification code",
        "subject": "Your verification code",
        "content": (
            "Your verification code is {{ code }}.\n\n"
            "It expires in {{ expires_in_minutes }} minutes. Do not share it with anyone.\n"
        ),
    },
    {
        "name": "vote-confirmation",
        "description": "Confirmation that a vote was recorded",
        "subject": "Your vote in {{ election_title }} was recorded",
        "content": (
            "Hello{% if full_name %} {{ full_name }}{% endif %},\n\n"
            "Your vote in {{ election_title }} was recorded at {{ cast_at }}."
            "{% if candidate_name %} You voted for {{ candidate_name }}.{% endif %}\n\n"
            "If this was not you, contact the election committee immediately.\n"
        ),
    },
]


def add_email_templates(apps, schema_editor) -> None:
    EmailTemplate = apps.get_model("post_office", "EmailTemplate")

    for template in TEMPLATES:
        EmailTemplate.objects.update_or_create(
            name=template["name"],
            defaults={
                "description": template["description"],
                "subject": template["subject"],
                "content": template["content"],
                "html_content": "",
            },
        )


def noop_reverse(apps, schema_editor) -> None:
    # Keep templates on rollback to avoid losing admin edits.
    return


class Migration(migrations.Migration):
    dependencies = [
        ("voting", "0001_initial"),
        ("post_office", "0013_email_recipient_delivery_status_alter_log_status"),
    ]

    operations = [
        migrations.RunPython(
            add_email_templates,
            reverse_code=noop_reverse,
        ),
    ]
