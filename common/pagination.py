from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination for list endpoints; `?page_size=` is capped at 200."""

    page_size_query_param = "page_size"
    max_page_size = 200
