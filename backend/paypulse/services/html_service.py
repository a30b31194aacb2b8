import re
from bs4 import BeautifulSoup

BLOCK_TAGS = ["div", "p", "li", "h1", "h2", "h3", "h4", "h5", "h6", "section", "article"]

def html_to_text(html_content: str) -> str:
    """
    Convert an HTML email body to readable text.

    Table cells are separated with " | " and rows/blocks end with a newline so
    amounts stay next to their labels ("Statement Balance: | $2,847.23").
    Entities are decoded by the parser.
    """
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, "html.parser")

    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    for cell in soup.find_all(["td", "th"]):
        cell.append(" | ")
    for row in soup.find_all("tr"):
        row.append("\n")
    for block in soup.find_all(BLOCK_TAGS):
        block.append("\n")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for hr in soup.find_all("hr"):
        hr.replace_with("\n---\n")

    text = soup.get_text()
    text = text.replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n[ \t]+", "\n", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
