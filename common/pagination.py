from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Page-number pagination for project, device and audit listings.

    ``?page_size=`` is honoured up to ``max_page_size``; a full project is
    twenty devices, so most device pages fit in one request.
    """

    page_size_query_param = "page_size"
    max_page_size = 100
