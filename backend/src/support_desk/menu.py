"""Static restaurant knowledge: menu, practical information and prompt text."""

from __future__ import annotations

from dataclasses import dataclass

CURRENCY = "francs CFA"


@dataclass(frozen=True)
class MenuItem:
    name: str
    price: str
    description: str = ""


@dataclass(frozen=True)
class MenuSection:
    title: str
    items: tuple[MenuItem, ...]
    note: str = ""


MENU: tuple[MenuSection, ...] = (
    MenuSection(
        "Salades",
        (
            MenuItem("Trio de légumes", "1000", "carottes, laitue, chou rouge"),
            MenuItem("Salade de gésiers", "1500", "poivrons, oignons, gésiers, cornichons, laitue"),
            MenuItem("Cocktail d'avocat oeuf dur", "2000", "avocat, crevettes, oeuf dur, sauce cocktail"),
            MenuItem("Salade du chef", "2000"),
        ),
    ),
    MenuSection(
        "Pâtes",
        (
            MenuItem("Spaghettis bolognaise", "1500", "viande hachée et sauce tomate"),
            MenuItem("Saute viande pommes/plantains", "1500", "pommes, plantain et viandes sautés à la tomate"),
            MenuItem("Tagliatelle à la carbonara", "2500", "crème fraîche et lardons"),
        ),
    ),
    MenuSection(
        "Burgers",
        (
            MenuItem("Hamburger", "1500"),
            MenuItem("Cheese burger", "2000"),
            MenuItem("Chicken burger", "2500"),
            MenuItem("Double cheese burger", "3000"),
            MenuItem("Burger XXL", "3500"),
        ),
    ),
    MenuSection(
        "KFC food",
        (
            MenuItem("Poulet Royal bacon", "3000", "blanc de poulet pané, bacon, fromage"),
            MenuItem("Spicy chicken", "3000", "poulet épicé pané"),
            MenuItem("Chicken wings", "3000", "ailes de poulet panées"),
        ),
    ),
    MenuSection(
        "Poulet grillé",
        (
            MenuItem("Poulet grillé (1/4)", "2500"),
            MenuItem("Poulet grillé (1/2)", "4500"),
            MenuItem("Poulet grillé (entier)", "9500"),
        ),
    ),
    MenuSection(
        "Poulet avec sauces",
        (
            MenuItem("Sauce forestière", "3500 / 5500 / 10500", "1/4, 1/2, entier"),
            MenuItem("Sauce poivre vert", "3000 / 5000 / 10000", "1/4, 1/2, entier"),
            MenuItem("Sauce provinciale", "3000 / 5000 / 10000", "1/4, 1/2, entier"),
        ),
    ),
    MenuSection(
        "Poulet pané",
        (
            MenuItem("Poulet pané (1/4)", "3000"),
            MenuItem("Poulet pané (1/2)", "5000"),
            MenuItem("Poulet pané (entier)", "10000"),
        ),
    ),
    MenuSection(
        "Poisson",
        (
            MenuItem("Poisson friture", "1500", "plus sauce aux oignons"),
            MenuItem("Maquereau grillé", "2000"),
            MenuItem("Bar grillé à la poêle", "2500"),
        ),
    ),
    MenuSection(
        "Porc",
        (
            MenuItem("Côte de porc grillée", "2500"),
            MenuItem("Côte de porc à la sauce provinciale", "3000"),
            MenuItem("Côte de porc à la sauce forestière", "3500"),
        ),
    ),
    MenuSection(
        "Boeuf",
        (
            MenuItem("Saute viande pommes/plantains", "1000"),
            MenuItem("Brochettes de boeuf", "2000"),
            MenuItem("Steak grillé sauce au poivre vert", "2500"),
            MenuItem("Filet de boeuf sauce marchand de vin", "2500"),
            MenuItem("Saucisse de boeuf", "3000"),
            MenuItem("Émincés de boeuf aux fines herbes", "2500"),
            MenuItem("Émincés de boeuf stroganoff", "3000"),
        ),
    ),
    MenuSection(
        "Spécialités africaines",
        (
            MenuItem("Ndolé Sawa", "2000"),
            MenuItem("Eru", "1000 / 1500"),
            MenuItem("Taro et bouillon", "", "uniquement le weekend"),
        ),
    ),
    MenuSection(
        "Pizza (petit / moyen / grand)",
        (
            MenuItem("Regina", "3500 / 5000", "jambon, fromage, champignons, tomates"),
            MenuItem("Pizza BBQ", "2500 / 3500 / 5000"),
            MenuItem("Végétarienne", "2500 / 3500 / 5000"),
            MenuItem("Pizza mozzarella", "2500 / 3500 / 5000"),
            MenuItem("Pizza Sims", "2500 / 3500 / 5000"),
            MenuItem("Pizza paysanne", "2500 / 3500 / 5000"),
            MenuItem("Pizza dolce vita", "3500 / 5000"),
            MenuItem("Pizza savoyarde", "3500 / 5000"),
        ),
        note="Supplément fromage: 500 francs CFA.",
    ),
    MenuSection(
        "Shawarma",
        (
            MenuItem("Shawarma viande", "1000"),
            MenuItem("Shawarma XXL", "2000"),
        ),
    ),
    MenuSection(
        "Desserts",
        (
            MenuItem("Mousse au chocolat", "1500"),
            MenuItem("Crêpes sucrées", "1000"),
            MenuItem("Fruits de saison", "1000"),
        ),
    ),
    MenuSection(
        "Glaces",
        (
            MenuItem("Cornet", "300"),
            MenuItem("Petit pot", "500"),
            MenuItem("Pot moyen", "1000"),
            MenuItem("Grand pot", "1500"),
        ),
    ),
    MenuSection(
        "Jus de fruits",
        (
            MenuItem("Jus d'orange", "500"),
            MenuItem("Jus d'ananas", "500"),
            MenuItem("Jus de pastèque", "500"),
            MenuItem("Cocktail", "500"),
        ),
    ),
    MenuSection(
        "Nos packages",
        (
            MenuItem("Package 1", "2500", "mini burger frites, rissoles aux légumes + poisson, un jus de fruit"),
            MenuItem("Package 2", "3000", "cuisse de poulet pané épicé + pommes, tacos viande + pommes, un cola 0,5 L"),
            MenuItem("Package 3", "2500", "poisson sauce basquaise + riz, crêpe melba, jus d'oseille"),
            MenuItem(
                "Package 4",
                "10000",
                "mix grill: saucisse, 1/4 de poulet, côte de porc, 2 brochettes, pizza margherita",
            ),
            MenuItem("Package 5", "3500", "ndomba de porc + plantain ou pommes, cassade de fruits"),
            MenuItem("Package 6", "4000", "pizza BBQ, glace vanille, pirogue d'ananas"),
        ),
    ),
    MenuSection(
        "Boissons",
        (
            MenuItem("Moët impérial", "60000"),
            MenuItem("Moët nectar", "75000"),
            MenuItem("Veuve Clicquot", "75000"),
            MenuItem("Ruinart brut", "90000"),
            MenuItem("Ruinart blanc", "80000"),
            MenuItem("Mumm Olympe", "80000"),
            MenuItem("Mumm classique", "55000"),
            MenuItem("Belaire classique", "50000"),
            MenuItem("Belaire rosé", "55000"),
            MenuItem("Belaire gold", "55000"),
            MenuItem("Belaire fantôme", "60000"),
            MenuItem("Dom Pérignon", "200000"),
            MenuItem("Castel ice", "15000"),
            MenuItem("JP Chenet", "20000"),
            MenuItem("Veuve de Vernay", "20000"),
            MenuItem("Tour de Canteloup", "7500"),
            MenuItem("Bière", "1000"),
            MenuItem("Eau", "1000"),
            MenuItem("Smooth, Isenbeck, Heineken, Booster (grand modèle)", "1500"),
            MenuItem("Vieux moulin", "5000"),
            MenuItem("Grande Guinness", "2000"),
        ),
    ),
)

PRACTICAL_INFORMATION: tuple[str, ...] = (
    "Horaires d'ouverture: 12h à 6h du lundi au dimanche",
    "Adresse: Yaoundé, Soa Fin Goudron",
    "Service de livraison disponible au (237) 655 232 584, de 12h à 2h du lundi au dimanche",
    "Temps de livraison: 30 minutes à 1 heure; temps de préparation: 20 à 40 minutes",
    "Paiements acceptés: espèces et Orange Money, y compris à la livraison",
    "Réductions pour les commandes en gros",
    "Le poulet et le poisson sont servis avec frites de pommes de terre, plantains ou riz; "
    "chaque portion supplémentaire coûte 500 francs CFA",
    "Frais de livraison: environ 500 francs CFA selon la distance, plus la gamelle à 200 francs CFA "
    "l'unité (150 francs CFA à partir de 2 unités)",
    "Plats végétariens et options sans gluten sur demande; signalez vos allergies",
    "Réservations de groupe acceptées en appelant à l'avance",
)

STANDARD_ANSWERS: tuple[tuple[str, str], ...] = (
    ("Comment allez-vous?", "Je vais bien merci et vous?"),
    ("Je veux passer une commande", "Bien sûr, que voulez-vous commander?"),
    ("Ce sera tout / c'est bon", "Merci! Votre commande a été prise en charge. À bientôt!"),
    ("Est-ce que ma commande est prête?", "Votre commande sera prête dans un instant. Merci pour votre patience."),
    ("Quel repas ne met pas long?", "Le Poulet Grillé (1/4) à 2500 francs CFA."),
)


def format_price(price: str) -> str:
    if not price:
        return "prix sur demande"
    return f"{price} {CURRENCY}"


def menu_lines() -> list[str]:
    lines: list[str] = []
    for section in MENU:
        lines.append(f"{section.title.upper()}:")
        for item in section.items:
            detail = f" ({item.description})" if item.description else ""
            lines.append(f"- {item.name}{detail}: {format_price(item.price)}")
        if section.note:
            lines.append(f"- {section.note}")
        lines.append("")
    return lines


def system_prompt(restaurant_name: str) -> str:
    answers = "\n".join(f"Q: {question}\nR: {answer}" for question, answer in STANDARD_ANSWERS)
    information = "\n".join(f"- {line}" for line in PRACTICAL_INFORMATION)
    menu = "\n".join(menu_lines()).rstrip()
    return (
        f"Tu es un employé du restaurant {restaurant_name}. Ton rôle est de comprendre les demandes des "
        "clients et d'y répondre de manière professionnelle, comme le ferait un vrai employé. "
        f"Tu donnes les prix en {CURRENCY}.\n\n"
        "Sois poli, aimable, précis et concis, avec un peu d'humour à l'occasion. Si le client écrit en "
        "anglais tu réponds en anglais, s'il écrit en français tu réponds en français.\n\n"
        f"Voici notre menu complet:\n\n{menu}\n\n"
        f"Informations importantes:\n{information}\n\n"
        f"Réponses standards:\n{answers}\n\n"
        "Les clients peuvent formuler la même demande de plusieurs façons. Sers-toi de ce menu pour "
        "répondre aux questions ou demande des précisions au client si nécessaire."
    )


def goodbye_message(restaurant_name: str) -> str:
    return f"Merci d'avoir choisi {restaurant_name}. À bientôt!"
