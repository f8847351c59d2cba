"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  CRM - Modèle CSV d'import clients                                           ║
║                                                                              ║
║  Colonnes = orthographes canoniques acceptées par le normaliseur.            ║
║  AUCUNE colonne carte dans le modèle (import legacy uniquement).             ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import csv
import io
from typing import Dict, List

TEMPLATE_FILENAME = "clients_import_template.csv"

TEMPLATE_COLUMNS = [
    "name",
    "email",
    "phone",
    "contactStatus",
    "contactType",
    "companyType",
    "industry",
    "address",
    "city",
    "state",
    "postalCode",
    "website",
    "facebookPage",
    "ownedBy",
    "forecastedAmount",
    "projectedCloseDate",
    "fullName",
    "description",
]

SAMPLE_ROWS = [
    {
        "name": "Acme Corporation",
        "email": "contact@acme.com",
        "phone": "415-555-0100",
        "contactStatus": "New Prospect",
        "contactType": "Email",
        "companyType": "Corporation",
        "industry": "Technology",
        "address": "123 Main St",
        "city": "San Francisco",
        "state": "CA",
        "postalCode": "94105",
        "website": "https://acme.com",
        "facebookPage": "https://facebook.com/acme",
        "ownedBy": "sales@yourcompany.com",
        "forecastedAmount": "50000",
        "projectedCloseDate": "2024-12-31",
        "fullName": "John Smith",
        "description": "Large technology company interested in our services",
    },
    {
        "name": "Beta Industries",
        "email": "info@beta.com",
        "phone": "313-555-0199",
        "contactStatus": "Initial Contact",
        "contactType": "Phone",
        "companyType": "LLC",
        "industry": "Manufacturing",
        "address": "456 Industrial Ave",
        "city": "Detroit",
        "state": "MI",
        "postalCode": "48201",
        "website": "https://beta-industries.com",
        "facebookPage": "",
        "ownedBy": "manager@yourcompany.com",
        "forecastedAmount": "75000",
        "projectedCloseDate": "11/15/2024",
        "fullName": "Sarah Johnson",
        "description": "Manufacturing company looking for automation solutions",
    },
]


def generate_clients_template(rows: List[Dict] = None) -> str:
    """
    Génère le contenu CSV du modèle d'import.

    Args:
        rows: lignes d'exemple (SAMPLE_ROWS par défaut)

    Returns:
        Contenu CSV en string
    """
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=TEMPLATE_COLUMNS, extrasaction="ignore")
    writer.writeheader()

    for row in SAMPLE_ROWS if rows is None else rows:
        writer.writerow({col: row.get(col, "") for col in TEMPLATE_COLUMNS})

    return output.getvalue()
