"""
Keyword seed rules of the accounting back-office, by entry kind.

Used to seed a ClassifierModel so a fresh installation classifies common
descriptions before any human review has trained it.
"""

from typing import Dict, Tuple

from ..models import EntryKind

SEED_RULES: Dict[EntryKind, Dict[str, Tuple[str, ...]]] = {
    EntryKind.REVENUE: {
        "Vendas": ("venda", "vendas", "pagamento", "cliente"),
        "Prestação de Serviços": (
            "servico", "serviço", "serviços", "consulta", "consultoria", "honorários",
        ),
        "Rendimentos": ("rendimento", "juros", "dividendo"),
    },
    EntryKind.EXPENSE: {
        "Fornecedores": ("fornecedor", "compra", "material"),
        "Folha de Pagamento": ("salario", "salário", "folha", "funcionário"),
        "Impostos e Tributos": (
            "imposto", "tributo", "darf", "das", "inss", "fgts", "irpj",
            "pis", "cofins", "csll", "iss", "icms", "ipi",
        ),
        "Aluguel": ("aluguel", "locação"),
        "Utilidades": ("energia", "água", "agua", "luz", "telefone", "internet"),
        "Despesas Financeiras": ("juros", "taxa", "tarifa", "bancária", "bancaria", "banco"),
    },
}

# Weight of one seed keyword, in trained-example units
SEED_WEIGHT = 1
