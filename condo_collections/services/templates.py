from __future__ import annotations

import re
from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Dict, Mapping

from ..core.errors import TemplateRenderError

TAG_PATTERN = re.compile(r"{{\s*([a-zA-Z0-9_]+)\s*}}")


def format_money(amount: Decimal) -> str:
    return f"${Decimal(amount):,.2f}"


@dataclass(frozen=True)
class AssociationContext:
    association_name: str
    association_address: str
    payment_portal_url: str
    board_contact_phone: str
    board_email: str


@dataclass(frozen=True)
class NoticePayload:
    owner_name: str
    unit_number: str
    amount_owed: str
    days_delinquent: int
    estimated_total_with_fees: str


@dataclass(frozen=True)
class ReferralPayload:
    attorney_name: str
    owner_name: str
    unit_number: str
    amount_owed: str
    days_delinquent: int
    maintenance_arrears: str
    assessment_arrears: str
    late_fees: str
    owner_email: str
    owner_phone: str
    last_payment_date: str
    contact_history: str


@dataclass(frozen=True)
class DigestPayload:
    unit_count: int
    new_delinquencies: str
    escalations: str
    recoveries: str
    attorney_referrals: str
    delivery_failures: str
    total_delinquent: int
    total_owed: str
    count_30_60: int
    count_60_90: int
    count_90_plus: int
    action_items: str


@dataclass(frozen=True)
class MessageTemplate:
    subject: str
    body: str


OWNER_NOTICE_TEMPLATES: Dict[str, MessageTemplate] = {
    "30_day": MessageTemplate(
        subject="{{association_name}} - Payment Reminder: Unit {{unit_number}}",
        body="""Dear {{owner_name}},

This is a friendly reminder that the account for Unit {{unit_number}} has an outstanding balance.

Current Balance Due: {{amount_owed}}
Days Past Due: {{days_delinquent}}

To avoid late fees and further collection action, please submit payment as soon as possible.

Payment options:
- Online: {{payment_portal_url}}
- Check mailed to: {{association_name}}, {{association_address}}
- Questions: {{board_email}} or {{board_contact_phone}}

If you need to arrange a payment plan, please contact the board.

{{association_name}} Board""",
    ),
    "60_day": MessageTemplate(
        subject="{{association_name}} - Second Notice: Unit {{unit_number}}",
        body="""Dear {{owner_name}},

This is the SECOND NOTICE regarding the outstanding balance on Unit {{unit_number}}.

Current Balance Due: {{amount_owed}}
Days Past Due: {{days_delinquent}}

Late fees are being applied to this account under the association's collection policy.

Full payment must be received within 30 days. Payment plans are available if you contact the board now.
Continued non-payment will lead to a lien on the unit and referral to the association's attorney, with
attorney fees and court costs added to the account.

Payment options:
- Online: {{payment_portal_url}}
- Check mailed to: {{association_name}}, {{association_address}}
- Questions: {{board_email}} or {{board_contact_phone}}

{{association_name}} Board""",
    ),
    "90_day": MessageTemplate(
        subject="{{association_name}} - FINAL NOTICE before attorney referral: Unit {{unit_number}}",
        body="""Dear {{owner_name}},

This is the FINAL NOTICE before the account for Unit {{unit_number}} is referred to the association's attorney.

Current Balance Due: {{amount_owed}}
Days Past Due: {{days_delinquent}}

If the balance is not paid, or a payment plan arranged, the account will be referred for collection.
Estimated balance once attorney fees and court costs are added: {{estimated_total_with_fees}}

Contact the board today:
- Email: {{board_email}}
- Phone: {{board_contact_phone}}
- Online: {{payment_portal_url}}

{{association_name}} Board""",
    ),
}

ATTORNEY_REFERRAL_TEMPLATE = MessageTemplate(
    subject="{{association_name}} - Attorney Referral: Unit {{unit_number}}",
    body="""Dear {{attorney_name}},

Please accept this referral for collection action on behalf of {{association_name}}.

UNIT
- Unit number: {{unit_number}}
- Owner: {{owner_name}}
- Property: {{association_address}}, Unit {{unit_number}}

ACCOUNT
- Total owed: {{amount_owed}}
- Days delinquent: {{days_delinquent}}
- Last payment: {{last_payment_date}}

BALANCE BREAKDOWN
- Maintenance arrears: {{maintenance_arrears}}
- Special assessment arrears: {{assessment_arrears}}
- Late fees: {{late_fees}}
- Total: {{amount_owed}}

OWNER CONTACT
- Email: {{owner_email}}
- Phone: {{owner_phone}}

NOTICE HISTORY
{{contact_history}}

Please proceed with a demand letter, lien filing and collection proceedings as appropriate.

{{association_name}} Board
{{board_email}} / {{board_contact_phone}}""",
)

BOARD_DIGEST_TEMPLATE = MessageTemplate(
    subject="{{association_name}} - Delinquency Digest: {{unit_count}} units need attention",
    body="""Dear Board Members,

The collections cycle has completed. {{unit_count}} units need attention.

NEW DELINQUENCIES:
{{new_delinquencies}}

ESCALATIONS:
{{escalations}}

RECOVERED:
{{recoveries}}

ATTORNEY REFERRALS:
{{attorney_referrals}}

DELIVERY FAILURES:
{{delivery_failures}}

SUMMARY:
- Total delinquent units: {{total_delinquent}}
- Total amount owed: {{total_owed}}
- Units 30-60 days: {{count_30_60}}
- Units 60-90 days: {{count_60_90}}
- Units 90+ days: {{count_90_plus}}

ACTION ITEMS:
{{action_items}}

This is an automated message from the {{association_name}} collections system.""",
)

REFERRAL_FAILURE_TEMPLATE = MessageTemplate(
    subject="{{association_name}} - URGENT: attorney referral for Unit {{unit_number}} failed",
    body="""Dear Board Members,

The attorney referral for Unit {{unit_number}} ({{owner_name}}, {{amount_owed}} owed, {{days_delinquent}} days)
could not be delivered to {{attorney_name}}.

Error: {{error}}

Please forward the referral manually. The system will retry on the next collections cycle.

{{association_name}} collections system""",
)


def payload_context(payload: object, association: AssociationContext, **extra: object) -> Dict[str, str]:
    context = {field.name: str(getattr(association, field.name)) for field in fields(association)}
    context.update({field.name: str(getattr(payload, field.name)) for field in fields(payload)})
    context.update({key: str(value) for key, value in extra.items()})
    return context


def render_merge_tags(text: str, context: Mapping[str, str]) -> str:
    if not text:
        return text
    missing = sorted({key for key in TAG_PATTERN.findall(text) if key not in context})
    if missing:
        raise TemplateRenderError(f"Template placeholders without values: {', '.join(missing)}")
    return TAG_PATTERN.sub(lambda match: context[match.group(1)], text)


def render_template(template: MessageTemplate, context: Mapping[str, str]) -> Dict[str, str]:
    return {
        "subject": render_merge_tags(template.subject, context),
        "body": render_merge_tags(template.body, context),
    }
