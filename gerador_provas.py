"""
Montagem de provas a partir do banco de questões de um simulado.

As questões são separadas por dificuldade, cada bloco recebe uma meta
proporcional ao percentual pedido e os blocos são concatenados na ordem
fácil, média, difícil. Nada aqui acessa o banco de dados: as funções
recebem a lista de questões já carregada, em ordem de criação.
"""
import logging
import random
from dataclasses import dataclass, field

from erros import QuestoesInsuficientes, ValidacaoFalhou
from tipos import Dificuldade, ORDEM_DIFICULDADES

logger = logging.getLogger(__name__)


@dataclass
class ResultadoMontagem:
    provas: list
    reutilizou_questoes: bool = False
    substituicoes: list = field(default_factory=list)
    aviso: str = None


def arredondar(numerador, denominador):
    """Divisão inteira com arredondamento meio-para-cima (2.5 -> 3)."""
    return (2 * numerador + denominador) // (2 * denominador)


def normalizar_percentuais(percentuais):
    """
    Converte o dicionário de percentuais (chaves 'FACIL'/'MEDIO'/'DIFICIL' ou
    Dificuldade) em {Dificuldade: int}, validando que somam 100.
    """
    normalizados = {}
    for dificuldade in ORDEM_DIFICULDADES:
        valor = percentuais.get(dificuldade, percentuais.get(dificuldade.value, 0))
        if valor is None:
            valor = 0
        if isinstance(valor, bool) or not isinstance(valor, (int, float)) or valor != int(valor):
            raise ValidacaoFalhou(f'Percentual de {dificuldade.value} deve ser um número inteiro.')
        if not 0 <= valor <= 100:
            raise ValidacaoFalhou(f'Percentual de {dificuldade.value} deve estar entre 0 e 100.')
        normalizados[dificuldade] = int(valor)

    if sum(normalizados.values()) != 100:
        raise ValidacaoFalhou('Percentuais devem somar 100%.')
    return normalizados


def calcular_metas(quantidade, percentuais):
    """
    Quantidade de questões por dificuldade. A sobra ou falta causada pelo
    arredondamento vai para o bloco de maior percentual (empate: fácil,
    média, difícil), de forma que a soma seja sempre `quantidade`.
    """
    percentuais = normalizar_percentuais(percentuais)
    metas = {d: arredondar(quantidade * percentuais[d], 100) for d in ORDEM_DIFICULDADES}

    diferenca = quantidade - sum(metas.values())
    if diferenca:
        maior = max(ORDEM_DIFICULDADES, key=lambda d: (percentuais[d], -ORDEM_DIFICULDADES.index(d)))
        metas[maior] += diferenca
    return metas


def particionar(pool):
    blocos = {d: [] for d in ORDEM_DIFICULDADES}
    for questao in pool:
        blocos[Dificuldade(questao.dificuldade)].append(questao)
    return blocos


def _quantidades_efetivas(disponiveis, metas, substituir):
    efetivas = dict(metas)
    substituicoes = []
    falta = 0
    for d in ORDEM_DIFICULDADES:
        tamanho = len(disponiveis[d])
        if tamanho < efetivas[d]:
            if not substituir:
                raise QuestoesInsuficientes(
                    f'Questões de nível {d.value} insuficientes: necessárias {metas[d]}, disponíveis {tamanho}.',
                    dificuldade=d.value, necessarias=metas[d], disponiveis=tamanho,
                )
            falta += efetivas[d] - tamanho
            substituicoes.append({'dificuldade': d.value, 'quantidade': tamanho - efetivas[d]})
            efetivas[d] = tamanho

    for d in ORDEM_DIFICULDADES:
        if not falta:
            break
        sobra = len(disponiveis[d]) - efetivas[d]
        extra = min(sobra, falta)
        if extra > 0:
            efetivas[d] += extra
            falta -= extra
            substituicoes.append({'dificuldade': d.value, 'quantidade': extra})

    if falta:
        raise QuestoesInsuficientes(
            f'Questões insuficientes mesmo com substituição entre níveis (faltam {falta}).',
            faltam=falta,
        )
    return efetivas, substituicoes


def _selecionar(disponiveis, metas, embaralhar, embaralhar_ordem, substituir, rng):
    efetivas, substituicoes = _quantidades_efetivas(disponiveis, metas, substituir)

    selecionadas = []
    for d in ORDEM_DIFICULDADES:
        bloco = disponiveis[d]
        if embaralhar:
            selecionadas.extend(rng.sample(bloco, efetivas[d]))
        else:
            selecionadas.extend(bloco[:efetivas[d]])

    if embaralhar_ordem:
        rng.shuffle(selecionadas)
    return selecionadas, substituicoes


def montar_provas(pool, quantidade, quantidade_provas=1, percentuais=None, embaralhar=False,
                  embaralhar_ordem=False, substituir=False, rng=None):
    """
    Gera `quantidade_provas` listas de `quantidade` questões.

    Enquanto o pool comportar, as provas são sorteadas sem reposição de um
    pool compartilhado e, portanto, não têm questões em comum. Quando isso
    não é possível, cada prova é sorteada do pool inteiro e o resultado sai
    com `reutilizou_questoes=True`.
    """
    if quantidade < 1:
        raise ValidacaoFalhou('A prova deve ter ao menos uma questão.')
    if quantidade_provas < 1:
        raise ValidacaoFalhou('Informe ao menos uma prova para gerar.')

    rng = rng or random.Random()
    pool = list(pool)

    if percentuais is None:
        if len(pool) < quantidade:
            raise QuestoesInsuficientes(
                f'Questões disponíveis ({len(pool)}) insuficientes para uma prova com {quantidade} questões.',
                necessarias=quantidade, disponiveis=len(pool),
            )
        # Sem percentuais o pool inteiro é um bloco único, guardado na chave
        # FACIL apenas para reaproveitar a mesma rotina de seleção.
        blocos = {d: [] for d in ORDEM_DIFICULDADES}
        blocos[Dificuldade.FACIL] = pool
        metas = {Dificuldade.FACIL: quantidade, Dificuldade.MEDIO: 0, Dificuldade.DIFICIL: 0}
    else:
        blocos = particionar(pool)
        metas = calcular_metas(quantidade, percentuais)

    try:
        return _montar_disjuntas(blocos, metas, quantidade_provas, embaralhar, embaralhar_ordem, substituir, rng)
    except QuestoesInsuficientes:
        if quantidade_provas == 1:
            raise
        logger.info('Pool insuficiente para %s provas disjuntas; questões serão repetidas.', quantidade_provas)

    provas = []
    substituicoes = []
    for _ in range(quantidade_provas):
        selecao, subs = _selecionar(blocos, metas, embaralhar, embaralhar_ordem, substituir, rng)
        provas.append(selecao)
        substituicoes.extend(subs)

    return ResultadoMontagem(
        provas=provas,
        reutilizou_questoes=True,
        substituicoes=substituicoes,
        aviso=(f'O banco não comporta {quantidade_provas} provas sem repetir questões; '
               'as provas geradas compartilham questões entre si.'),
    )


def _montar_disjuntas(blocos, metas, quantidade_provas, embaralhar, embaralhar_ordem, substituir, rng):
    usadas = set()
    provas = []
    substituicoes = []
    for _ in range(quantidade_provas):
        disponiveis = {d: [q for q in blocos[d] if id(q) not in usadas] for d in ORDEM_DIFICULDADES}
        selecao, subs = _selecionar(disponiveis, metas, embaralhar, embaralhar_ordem, substituir, rng)
        usadas.update(id(q) for q in selecao)
        provas.append(selecao)
        substituicoes.extend(subs)
    return ResultadoMontagem(provas=provas, substituicoes=substituicoes)


def montar_prova(pool, quantidade, percentuais=None, embaralhar=False, embaralhar_ordem=False,
                 substituir=False, rng=None):
    return montar_provas(
        pool, quantidade, 1, percentuais=percentuais, embaralhar=embaralhar,
        embaralhar_ordem=embaralhar_ordem, substituir=substituir, rng=rng,
    ).provas[0]


def previsualizar(pool, quantidade, percentuais=None):
    """Quantas provas disjuntas o pool comporta com a configuração pedida."""
    blocos = particionar(pool)
    por_dificuldade = {d.value: len(blocos[d]) for d in ORDEM_DIFICULDADES}
    total = sum(por_dificuldade.values())

    provas_possiveis = total // quantidade if quantidade > 0 else 0
    metas = None
    if percentuais is not None and quantidade > 0:
        metas = calcular_metas(quantidade, percentuais)
        for d in ORDEM_DIFICULDADES:
            if metas[d] > 0:
                provas_possiveis = min(provas_possiveis, len(blocos[d]) // metas[d])

    return {
        'questoes_disponiveis': total,
        'questoes_por_dificuldade': por_dificuldade,
        'metas': {d.value: n for d, n in metas.items()} if metas else None,
        'provas_possiveis': provas_possiveis,
    }
