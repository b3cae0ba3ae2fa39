"""Customer record used by the samples."""

from typing import Optional

from tablestorage.codec import TableEntity


class CustomerEntity(TableEntity):
    """
    A customer keyed by last name (partition) and first name (row).

    Stored properties: ``Email``, ``PhoneNumber``.
    """
    email: Optional[str] = None
    phone_number: Optional[str] = None

    @classmethod
    def create(
        cls,
        last_name: str,
        first_name: str,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> "CustomerEntity":
        return cls(partition_key=last_name, row_key=first_name, email=email, phone_number=phone_number)

    def __str__(self) -> str:
        return f"{self.partition_key},{self.row_key}\t{self.email}\t{self.phone_number}"
