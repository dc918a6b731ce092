from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from drf_yasg.utils import swagger_auto_schema

from . import services
from .serializers import CreateMarathonSerializer, MarathonSerializer


class MarathonListView(APIView):

    def get_permissions(self):
        if self.request.method == "POST":
            return [IsAdminUser()]
        return [IsAuthenticated()]

    def get(self, request):
        marathons = services.upcoming_marathons()
        return Response(MarathonSerializer(marathons, many=True, context={"request": request}).data)

    @swagger_auto_schema(request_body=CreateMarathonSerializer)
    def post(self, request):
        serializer = CreateMarathonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return Response(serializer.data, status=status.HTTP_201_CREATED)


@api_view(["POST"])
def join(request, id: int):
    services.join_marathon(id, request.user.pk)
    return Response({"message": "Joined marathon"})


@api_view(["POST"])
@permission_classes([IsAdminUser])
def complete_ended(request):
    result = services.complete_ended_marathons()
    return Response({
        "message": "Ended marathons completed successfully",
        "marathons_completed": result.marathons,
        "participants_completed": result.participants,
    })
