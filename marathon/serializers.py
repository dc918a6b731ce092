from rest_framework import serializers

from .models import Marathon


class MarathonSerializer(serializers.ModelSerializer):
    participants_count = serializers.IntegerField(read_only=True)
    is_joined = serializers.SerializerMethodField()
    user_status = serializers.SerializerMethodField()

    class Meta:
        model = Marathon
        fields = [
            "id",
            "title",
            "description",
            "start_date",
            "end_date",
            "participants_count",
            "is_joined",
            "user_status",
        ]

    def _participant(self, obj):
        request = self.context.get("request")
        if request is None:
            return None
        return next((p for p in obj.participants.all() if p.user_id == request.user.pk), None)

    def get_is_joined(self, obj):
        return self._participant(obj) is not None

    def get_user_status(self, obj):
        participant = self._participant(obj)
        return participant.status if participant else None


class CreateMarathonSerializer(serializers.ModelSerializer):
    class Meta:
        model = Marathon
        fields = ["id", "title", "description", "start_date", "end_date"]

    def validate(self, attrs):
        if attrs["end_date"] <= attrs["start_date"]:
            raise serializers.ValidationError({"end_date": "End date must be after start date."})
        return attrs
