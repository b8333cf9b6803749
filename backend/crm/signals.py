from django.db.models.signals import post_save, pre_save
from django.dispatch import receiver

from automations.bus import emit_async
from .models import Contact, Deal


def _contact_payload(contact: Contact, **data) -> dict:
    return {
        "organization_id": str(contact.tenant_id),
        "contact_id": str(contact.id),
        "email": contact.email,
        "phone": contact.phone,
        "data": data,
        "source": "crm",
    }


@receiver(pre_save, sender=Contact)
def remember_previous_tags(sender, instance: Contact, **kwargs):
    # Snapshot stored tags so post_save can emit tag_added/tag_removed diffs
    if instance._state.adding:
        instance._previous_tags = None
        return
    previous = Contact.objects.filter(pk=instance.pk).values_list("tags", flat=True).first()
    instance._previous_tags = list(previous or [])


@receiver(post_save, sender=Contact)
def emit_contact_events(sender, instance: Contact, created, **kwargs):
    if created:
        emit_async("contact_created", _contact_payload(
            instance, first_name=instance.first_name, last_name=instance.last_name,
            tags=list(instance.tags or []), source=instance.source,
        ))
        return

    previous = getattr(instance, "_previous_tags", None)
    if previous is None:
        return
    current = list(instance.tags or [])
    for tag in current:
        if tag not in previous:
            emit_async("tag_added", _contact_payload(instance, tag_name=tag))
    for tag in previous:
        if tag not in current:
            emit_async("tag_removed", _contact_payload(instance, tag_name=tag))


@receiver(pre_save, sender=Deal)
def remember_previous_stage(sender, instance: Deal, **kwargs):
    if instance._state.adding:
        instance._previous_stage = None
        return
    instance._previous_stage = Deal.objects.filter(pk=instance.pk).values_list("stage", flat=True).first()


def _deal_payload(deal: Deal, **data) -> dict:
    return {
        "organization_id": str(deal.tenant_id),
        "contact_id": str(deal.contact_id) if deal.contact_id else None,
        "deal_id": str(deal.id),
        "data": {
            "title": deal.title,
            "value": str(deal.value),
            "total_value": str(deal.value),
            "currency": deal.currency,
            "pipeline_id": str(deal.pipeline_id) if deal.pipeline_id else None,
            **data,
        },
        "source": "crm",
    }


@receiver(post_save, sender=Deal)
def emit_deal_events(sender, instance: Deal, created, **kwargs):
    if created:
        emit_async("deal_created", _deal_payload(instance, stage_id=instance.stage))
        return

    previous = getattr(instance, "_previous_stage", None)
    if previous is not None and previous != instance.stage:
        emit_async("deal_stage_changed", _deal_payload(
            instance, from_stage_id=previous, to_stage_id=instance.stage, stage_id=instance.stage,
        ))
        if instance.stage in ("won", "lost"):
            emit_async(f"deal_{instance.stage}", _deal_payload(instance, stage_id=instance.stage))
