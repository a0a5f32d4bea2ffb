"""
Red-cell compatibility between donor and recipient blood types.

The matrix is keyed by donor type; each entry lists the recipient types
that may safely receive from it.
"""

COMPATIBILITY = {
    'O-': ('O-', 'O+', 'A-', 'A+', 'B-', 'B+', 'AB-', 'AB+'),  # Universal donor
    'O+': ('O+', 'A+', 'B+', 'AB+'),
    'A-': ('A-', 'A+', 'AB-', 'AB+'),
    'A+': ('A+', 'AB+'),
    'B-': ('B-', 'B+', 'AB-', 'AB+'),
    'B+': ('B+', 'AB+'),
    'AB-': ('AB-', 'AB+'),
    'AB+': ('AB+',),  # Universal recipient
}


def is_compatible(donor_blood_type, recipient_blood_type):
    """True when blood of ``donor_blood_type`` can go to ``recipient_blood_type``."""
    return recipient_blood_type in COMPATIBILITY.get(donor_blood_type, ())


def get_compatible_donors(recipient_blood_type):
    """
    Donor blood types a recipient can receive from, in matrix order.
    Unknown recipient types get an empty list.
    """
    return [
        donor_type
        for donor_type, recipients in COMPATIBILITY.items()
        if recipient_blood_type in recipients
    ]


def get_compatible_recipients(donor_blood_type):
    return list(COMPATIBILITY.get(donor_blood_type, ()))
