from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination behavior for list endpoints.

    Terminals can tune page size with `?page_size=`; values are capped so the
    open-bill board and approval queue stay small.
    """

    page_size_query_param = "page_size"
    max_page_size = 200
