# algorithms/mcdm.py
import logging
from datetime import date

import numpy as np

from algorithms.blood_compatibility import is_compatible

logger = logging.getLogger(__name__)

# distance, compatibility, donations, recency
WEIGHTS = np.array([0.3, 0.3, 0.2, 0.2])
# True where a larger value is better
BENEFIT = np.array([False, True, True, True])

RECENCY_CAP_DAYS = 90
DEFAULT_DISTANCE_KM = 50


def rank_donors_mcdm(donors, distances, required_blood_type):
    """
    Rank donors using TOPSIS.

    Criteria:
    1. Distance (minimize)
    2. Blood compatibility (maximize)
    3. Donation count (maximize)
    4. Days since last donation, capped at 90 (maximize)

    Args:
        donors: iterable of donor profiles
        distances: mapping donor id -> km
        required_blood_type: blood type of the request

    Returns:
        List of (donor, score) tuples, best first. Scores are in [0, 1].
    """
    donor_list = list(donors) if donors is not None else []
    if not donor_list:
        return []

    if len(donor_list) == 1:
        return [(donor_list[0], 1.0)]

    today = date.today()
    rows = []
    for donor in donor_list:
        distance = distances.get(donor.id)
        if distance is None:
            distance = DEFAULT_DISTANCE_KM

        if donor.last_donation_date:
            days_since = min((today - donor.last_donation_date).days, RECENCY_CAP_DAYS)
        else:
            days_since = RECENCY_CAP_DAYS

        rows.append([
            distance,
            get_blood_compatibility_score(donor.blood_type, required_blood_type),
            donor.donation_count or 0,
            days_since,
        ])

    weighted = normalize_matrix(np.array(rows, dtype=float)) * WEIGHTS

    ideal = np.where(BENEFIT, weighted.max(axis=0), weighted.min(axis=0))
    negative_ideal = np.where(BENEFIT, weighted.min(axis=0), weighted.max(axis=0))

    d_positive = np.sqrt(((weighted - ideal) ** 2).sum(axis=1))
    d_negative = np.sqrt(((weighted - negative_ideal) ** 2).sum(axis=1))
    total = d_positive + d_negative

    # Identical alternatives are equally close to both ideals
    scores = np.divide(d_negative, total, out=np.full_like(total, 0.5), where=total > 0)

    ranked = [(donor, float(score)) for donor, score in zip(donor_list, scores)]
    ranked.sort(key=lambda x: x[1], reverse=True)

    logger.debug("TOPSIS ranked %d donors for %s", len(ranked), required_blood_type)
    return ranked


def normalize_matrix(matrix):
    """
    Vector normalization per column; all-zero columns stay zero.
    """
    if matrix.size == 0:
        return matrix

    norms = np.sqrt((matrix ** 2).sum(axis=0))
    return np.divide(matrix, norms, out=np.zeros_like(matrix, dtype=float), where=norms > 0)


def get_blood_compatibility_score(donor_type, required_type):
    """
    10 = exact match, 8 = compatible, 0 = incompatible
    """
    if donor_type == required_type:
        return 10
    return 8 if is_compatible(donor_type, required_type) else 0
