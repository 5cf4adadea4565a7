from dataclasses import dataclass


@dataclass(eq=False)
class Account:
    """
    Domain representation of a coin holder.

    Instances are shared: the account directory hands out one live object
    per username, so identity comparison (`is`) is meaningful and equality
    is left as identity on purpose.
    """

    username: str
    display_name: str
    password_record: str
    ip_address: str = ""
    balance: int = 0


@dataclass
class Token:
    """
    A single-use bearer claim on `worth` coins.

    `revert_tag` groups tokens for bulk reversal ("" when ungrouped) and
    `creator_username` names the account debited at mint time ("" for an
    administrative mint).
    """

    id: str
    worth: int
    revert_tag: str = ""
    creator_username: str = ""
