from rest_framework import serializers
from .models import Contact, Pipeline, Deal


class ContactSerializer(serializers.ModelSerializer):
    class Meta:
        model = Contact
        fields = "__all__"
        read_only_fields = ("tenant","created_at","updated_at")

    def validate_tags(self, value):
        if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
            raise serializers.ValidationError("tags must be a list of strings")
        # keep first occurrence order, drop duplicates
        return list(dict.fromkeys(t.strip() for t in value if t.strip()))


class PipelineSerializer(serializers.ModelSerializer):
    class Meta:
        model = Pipeline
        fields = "__all__"
        read_only_fields = ("tenant","created_at","updated_at")


class DealSerializer(serializers.ModelSerializer):
    class Meta:
        model = Deal
        fields = "__all__"
        read_only_fields = ("tenant","created_at","updated_at")
